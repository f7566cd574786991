import pytest

from entity_tracker import TrackerOptions


def test_defaults():
    options = TrackerOptions()

    assert options.auto_detect_changes is True
    assert options.partial_key_policy == "any"
    assert options.cascade_detach is False


def test_from_mapping():
    options = TrackerOptions.from_mapping({"partial_key_policy": "all", "cascade_detach": True})

    assert options == TrackerOptions(partial_key_policy="all", cascade_detach=True)


def test_from_mapping_rejects_unknown_options():
    with pytest.raises(ValueError):
        TrackerOptions.from_mapping({"lazy_loading": True})


@pytest.mark.parametrize(
    "kwargs",
    [{"partial_key_policy": "some"}, {"auto_detect_changes": "yes"}, {"cascade_detach": 1}],
)
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises((ValueError, TypeError)):
        TrackerOptions(**kwargs)
