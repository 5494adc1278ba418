"""Process entry points launched by the devloop console."""
