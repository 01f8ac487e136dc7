import sys

from stop_pipeline.cli import main

sys.exit(main())
