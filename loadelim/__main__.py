import sys

from loadelim.cli import main

sys.exit(main())
