import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from database import init_db


@pytest.fixture(scope="function")
def Session(tmp_path):
    return init_db(f"sqlite:///{tmp_path / 'checkpoints.db'}")
