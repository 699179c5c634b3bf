import sys

from pv_migrate.cli import main

sys.exit(main())
