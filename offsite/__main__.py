import sys

from offsite.cli import main


sys.exit(main())
