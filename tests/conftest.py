import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from pe_test_utils import PEBuilder, build_registration_image  # noqa: E402


@pytest.fixture
def pe_builder():
    builder = PEBuilder()
    builder.add_default_sections()
    return builder


@pytest.fixture
def legacy_image():
    return build_registration_image(24.1)


@pytest.fixture
def modern_image():
    return build_registration_image(24.2)
