"""Tests for database session handling."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hzpp_delays.database import check_database_connection, get_session_context


class TestSessionContext:
    """Session lifecycle."""

    @pytest.mark.asyncio
    async def test_session_closed_on_exit(self) -> None:
        session = AsyncMock()

        with patch("hzpp_delays.database.get_session_factory", return_value=lambda: session):
            async with get_session_context() as yielded:
                assert yielded is session

        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_on_dead_connection_keeps_original_error(self) -> None:
        session = AsyncMock()
        session.close = AsyncMock(side_effect=ConnectionResetError("connection lost"))

        with patch("hzpp_delays.database.get_session_factory", return_value=lambda: session):
            with pytest.raises(ConnectionRefusedError):
                async with get_session_context():
                    raise ConnectionRefusedError(111, "Connect call failed")

        session.close.assert_awaited_once()


class TestCheckDatabaseConnection:
    """Database reachability check."""

    @pytest.mark.asyncio
    async def test_unreachable_database_reports_false(self) -> None:
        engine = MagicMock()
        engine.connect.return_value.__aenter__ = AsyncMock(
            side_effect=ConnectionRefusedError(111, "Connect call failed")
        )
        engine.connect.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("hzpp_delays.database.get_engine", return_value=engine):
            assert await check_database_connection() is False

    @pytest.mark.asyncio
    async def test_reachable_database_reports_true(self) -> None:
        conn = AsyncMock()
        engine = MagicMock()
        engine.connect.return_value.__aenter__ = AsyncMock(return_value=conn)
        engine.connect.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("hzpp_delays.database.get_engine", return_value=engine):
            assert await check_database_connection() is True

        conn.execute.assert_awaited_once()
