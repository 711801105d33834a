import sys

from access_to_pg.cli import main

sys.exit(main())
