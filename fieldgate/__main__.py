import sys

from fieldgate.main import main

sys.exit(main())
