import sys

from snapshot_comparer.cli import main

sys.exit(main())
