import sys
from pathlib import Path

# Let the tests import commitsig straight from the source tree
src_path = str(Path(__file__).parent / 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)
