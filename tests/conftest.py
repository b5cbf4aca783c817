from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure repo root is importable so tests can import `CSF_py.*`
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from CSF_py.CSF_coneContrastMat import CSF_ConeContrastMat  # noqa: E402

# D65 grey in CIE 2006 LMS (Y = 1)
LMS_GRAY = np.array([0.739876529525622, 0.320136241543338, 0.020793708751515])


@pytest.fixture
def csf_model() -> CSF_ConeContrastMat:
    return CSF_ConeContrastMat()


@pytest.fixture
def lms_gray_10() -> np.ndarray:
    # Grey background with L+M = 10 cd/m^2
    return LMS_GRAY / (LMS_GRAY[0] + LMS_GRAY[1]) * 10.0


@pytest.fixture
def dkl_directions() -> np.ndarray:
    # Rows: LMS directions of the DKL cardinal axes L+M, L-M and S-(L+M)
    mc1 = LMS_GRAY[0] / LMS_GRAY[1]
    mc2 = (LMS_GRAY[0] + LMS_GRAY[1]) / LMS_GRAY[2]
    M_lms2006_dkl = np.array([[1, 1, 0],
                              [1, -mc1, 0],
                              [-1, -1, mc2]])
    return np.linalg.inv(M_lms2006_dkl).T
