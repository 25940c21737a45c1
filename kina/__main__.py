import sys

from kina.cli import main

sys.exit(main())
