import pytest

from entity_tracker import Err, InvalidOperationError, Ok


def test_ok_carries_value():
    result = Ok(5)

    assert result.is_ok and not result.is_err
    assert result.value == 5
    assert result.error is None
    assert result.unwrap() == 5


def test_err_raises_on_unwrap():
    error = InvalidOperationError("nope")
    result = Err(error)

    assert result.is_err and not result.is_ok
    assert result.value is None
    assert result.error is error
    with pytest.raises(InvalidOperationError):
        result.unwrap()
