import sys

from zendloader.cli import main

sys.exit(main())
