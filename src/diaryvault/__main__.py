import sys

from diaryvault.journal import main

sys.exit(main())
