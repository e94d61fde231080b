from __future__ import annotations

import sys
import os
from pathlib import Path

import numpy as np
import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))
    for name in ("BBDPRE_JAX_DQ_REL_YY", "BBDPRE_JAX_COLUMN_GROUPING", "BBDPRE_JAX_PROFILE"):
        os.environ.pop(name, None)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)
