import sys

from hrcompanion.cli import main

sys.exit(main())
