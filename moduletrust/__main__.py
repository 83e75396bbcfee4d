import sys

from moduletrust.cli import main

sys.exit(main())
