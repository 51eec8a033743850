#!/usr/bin/env python3
"""clawlink - unified entry point.

Automatically detects mode:
- No arguments → Interactive TUI chat
- With arguments → Headless CLI mode
"""

import sys


def main():
    """Main entry point."""
    args = sys.argv[1:]

    # Flags that should still launch TUI mode (not CLI mode)
    tui_only_flags = {'-v', '--verbose'}
    has_cli_args = bool([a for a in args if a not in tui_only_flags])

    if has_cli_args:
        from .cli import main as cli_main
        cli_main()
    else:
        from .tui import ClawlinkApp
        verbose = '-v' in args or '--verbose' in args
        app = ClawlinkApp(verbose=verbose)
        app.run()


if __name__ == "__main__":
    main()
