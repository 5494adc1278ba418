import sys
import logging

from devloop.log.setup import setup_logging
import devloop.console as console

log = logging.getLogger("console")


def main(argv=None) -> None:
    """The main entry point for the devloop command line."""
    args = list(sys.argv[1:] if argv is None else argv)

    verbose = "--verbose" in args
    if verbose:
        args.remove("--verbose")

    setup_logging(logging.DEBUG if verbose else logging.INFO)

    if not args:
        console.print_help()
        sys.exit(0)

    command, args = args[0].lower(), args[1:]
    try:
        exit_code = console.execute_command(command, args, verbose)
    except Exception as e:
        log.critical(f"An unexpected error occurred: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)

if __name__ == "__main__":
    main()
