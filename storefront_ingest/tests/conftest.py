"""
Shared fixtures: a mocked psycopg2 connection whose cursor is usable as a context manager.
"""

from unittest.mock import MagicMock

import pytest


@pytest.fixture
def mock_conn():
    """Return (connection, cursor) mocks."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    conn.cursor.return_value.__exit__.return_value = False
    return conn, cursor
