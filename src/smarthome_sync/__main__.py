import sys

from smarthome_sync.main import main

if __name__ == "__main__":
    sys.exit(main())
