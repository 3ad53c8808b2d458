import sys

from mediaproxy.cli import main

sys.exit(main())
