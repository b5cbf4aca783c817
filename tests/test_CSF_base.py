from __future__ import annotations

import io
import math

import numpy as np
import pytest
import torch

from CSF_py.CSF_base import CSFBase, InvalidPhysicalInputError, ShapeMismatchError


def test_lum_dep_constant_broadcasts_to_luminance() -> None:
    L = np.array([0.1, 1.0, 100.0])
    v = CSFBase.get_lum_dep([2.5], L)
    assert v.shape == L.shape
    assert np.all(v == 2.5)


def test_lum_dep_power_law() -> None:
    # v = p1 * L^p0
    assert math.isclose(float(CSFBase.get_lum_dep([0.5, 3.0], 4.0)), 6.0, rel_tol=1e-12)


def test_lum_dep_three_coefficients() -> None:
    # v = p0 * (1 + p1/L)^(-p2) = 2 * 2^(-0.5)
    v = CSFBase.get_lum_dep([2.0, 10.0, 0.5], 10.0)
    assert math.isclose(float(v), math.sqrt(2.0), rel_tol=1e-12)


def test_lum_dep_five_coefficients() -> None:
    # 1 * 2^-1 * (1 - 2^-1) = 0.25
    v = CSFBase.get_lum_dep([1.0, 1.0, 1.0, 1.0, 1.0], 1.0)
    assert math.isclose(float(v), 0.25, rel_tol=1e-12)


def test_lum_dep_unsupported_length() -> None:
    with pytest.raises(NotImplementedError):
        CSFBase.get_lum_dep([1.0, 2.0, 3.0, 4.0], 10.0)


def test_lum_dep_keeps_torch_tensors() -> None:
    L = torch.tensor([1.0, 10.0, 100.0], dtype=torch.float64)
    v = CSFBase.get_lum_dep([2.0, 10.0, 0.5], L)
    assert isinstance(v, torch.Tensor)
    expected = CSFBase.get_lum_dep([2.0, 10.0, 0.5], L.numpy())
    np.testing.assert_allclose(v.numpy(), expected, rtol=1e-12)


def test_param_struct_roundtrip_with_lists() -> None:
    s = {"a": {"x": 1.0, "y": [2.0, 3.0]}, "cm": [{"z": 4.0}, {"z": [5.0, 6.0, 7.0]}], "b": 8.0}
    vec = CSFBase.struct2param(s)
    np.testing.assert_array_equal(vec, np.arange(1.0, 9.0))

    out, used = CSFBase.param2struct(s, vec * 10)
    assert used == 8
    assert out["a"]["x"] == 10.0
    np.testing.assert_array_equal(out["cm"][1]["z"], [50.0, 60.0, 70.0])
    assert out["b"] == 80.0


def test_param2struct_rejects_short_vector() -> None:
    with pytest.raises(ValueError):
        CSFBase.param2struct({"a": [1.0, 2.0], "b": 3.0}, [1.0, 2.0])


def test_check_batch_allows_scalars_and_colour_dim() -> None:
    N = CSFBase.check_batch(
        freq=np.ones(4), area=np.array(1.0), LMS_mean=np.ones((4, 3)), LMS_delta=np.ones(3)
    )
    assert N == 4


def test_check_batch_allows_empty_batch() -> None:
    N = CSFBase.check_batch(freq=np.array([]), area=np.array(1.0), LMS_mean=np.ones(3))
    assert N == 0
    with pytest.raises(ShapeMismatchError):
        CSFBase.check_batch(freq=np.array([]), area=np.ones(2))


def test_check_batch_rejects_mismatched_lengths() -> None:
    with pytest.raises(ShapeMismatchError):
        CSFBase.check_batch(freq=np.ones(4), area=np.ones(3))


def test_check_positive() -> None:
    CSFBase.check_positive(freq=np.array([0.5, 2.0]))
    with pytest.raises(InvalidPhysicalInputError):
        CSFBase.check_positive(freq=np.array([0.5, 0.0]))
    with pytest.raises(InvalidPhysicalInputError):
        CSFBase.check_positive(freq=np.array([0.5, np.nan]))


def test_flatten_lms_requires_three_channels() -> None:
    assert CSFBase.flatten_lms(np.ones((1, 3)), "LMS_mean").shape == (3,)
    with pytest.raises(ShapeMismatchError):
        CSFBase.flatten_lms(np.ones((4, 2)), "LMS_mean")


def test_print_vector_format() -> None:
    fh = io.StringIO()
    CSFBase.print_vector(fh, np.array([1.0, 2.5, 7.89951e-05]))
    fh.write("|")
    CSFBase.print_vector(fh, np.array(3.0))
    assert fh.getvalue() == "[ 1 2.5 7.89951e-05 ]|3"
