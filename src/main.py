import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from autoinst.launcher import main  # noqa: E402

if __name__ == "__main__":
    main(sys.argv[1:])
