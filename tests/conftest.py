"""
Pytest configuration and global fixtures.
"""
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.constants import DEFAULT_PROMPTS
from data.database import DatabaseManager
from data.db_models import Prompt


@pytest.fixture
def db_manager():
    """In-memory database with all tables and the default prompts."""
    manager = DatabaseManager("sqlite:///:memory:")
    manager.create_tables()
    with manager.session() as session:
        for name, content in DEFAULT_PROMPTS.items():
            session.add(Prompt(name=name, content=content))
    yield manager
    manager.drop_tables()
    manager.dispose()


@pytest.fixture
def test_db_session(db_manager):
    """Create fresh database session for each test."""
    session = db_manager.get_session()

    yield session

    # Rollback any uncommitted changes and close
    session.rollback()
    session.close()


@pytest.fixture
def temp_dir(tmp_path):
    """Provide temporary directory for test files."""
    return tmp_path


@pytest.fixture
def blank_page():
    """White 1000x800 BGR page."""
    return np.full((800, 1000, 3), 255, dtype=np.uint8)


@pytest.fixture
def two_block_page():
    """
    Page with two separated blocks of dark bars.

    The bars inside a block are 10px apart; the blocks are 300px apart
    vertically, far more than the 30px merge gap for a 1000px-wide page.
    """
    img = np.full((800, 1000, 3), 255, dtype=np.uint8)
    for y in (100, 130, 160):
        cv2.rectangle(img, (100, y), (300, y + 20), (0, 0, 0), -1)
    for y in (500, 530):
        cv2.rectangle(img, (100, y), (300, y + 20), (0, 0, 0), -1)
    return img


@pytest.fixture
def png_bytes(two_block_page):
    """The two-block page encoded as PNG."""
    ok, buf = cv2.imencode('.png', two_block_page)
    assert ok
    return buf.tobytes()
