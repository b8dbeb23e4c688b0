import sys

from badserv.cli import main

sys.exit(main())
