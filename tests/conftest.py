from __future__ import annotations

import pytest

from fwfixtures import FakeMounter


@pytest.fixture
def fake_mounter() -> FakeMounter:
    return FakeMounter()
