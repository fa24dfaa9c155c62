import sys

from sqlmonitor.main import main

sys.exit(main())
