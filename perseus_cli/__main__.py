import sys

from perseus_cli.cli import main

sys.exit(main())
