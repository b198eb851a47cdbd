"""Package entry point for ``python -m scribeflow``.

WHY: Users run the tool as ``python -m scribeflow recording.wav``.
Python's ``-m`` flag looks for ``__main__.py`` inside the package and
executes it.

HOW: Delegates to the CLI's main() function. ``serve`` as the first
argument starts the HTTP job API instead.
"""

import sys

if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "serve":
        from scribeflow.server.app import main as serve_main
        serve_main(sys.argv[2:])
    else:
        from scribeflow.cli import main
        main()
