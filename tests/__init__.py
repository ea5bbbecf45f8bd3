"""
Test package for the propagation tools.

Subdirectories mirror the structure of the main packages:
- volumes: slice stores, the slice cache, sampling, reslicing, structure tensors
- lrps: intensity profiles, chains, energy terms, configuration, the engine
- surfaces: point sets and volume packages

To run all tests:
    python -m pytest tests

To run tests in a specific directory:
    python -m pytest tests/lrps
"""

import sys
from pathlib import Path

# Add the project root to the path for proper imports
# This allows tests to be run from any directory
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.append(str(project_root))
