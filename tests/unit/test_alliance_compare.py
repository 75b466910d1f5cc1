"""Unit tests for alliance identity comparison."""

import pytest

from realm_common.ingest.change_detection import same_alliance


@pytest.mark.parametrize(
    "old, new, expected",
    [
        (("100", "ABC"), ("100", "ABC"), True),
        (("100", "ABC"), ("100", "XYZ"), True),   # tag renamed, same alliance
        (("100", "ABC"), ("200", "ABC"), False),
        (("100", "ABC"), (None, None), False),
        ((None, None), (None, None), True),
        ((None, ""), (None, None), True),
        ((None, "ABC"), (None, "XYZ"), False),
        ((None, "ABC"), ("100", "ABC"), True),    # id appeared, tag unchanged
    ],
)
def test_same_alliance(old, new, expected):
    assert same_alliance(*old, *new) is expected
