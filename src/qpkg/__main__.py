import sys

from qpkg.cli import main

sys.exit(main())
