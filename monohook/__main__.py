import sys

from monohook.cli import main

sys.exit(main())
