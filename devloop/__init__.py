"""
devloop - a development process supervisor.

Rebuilds and reruns a program whenever the working tree changes, appending all
of its output to a single log file.
"""

__version__ = "0.1.0"
