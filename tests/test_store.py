"""Tests for the route store (persistence gateway)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from hzpp_delays.domain import RouteType, Station, WireFlag
from hzpp_delays.services.store import PersistenceError, RouteStore

from .fixtures.monitoring import ROUTE_DURATION, ROUTE_START, build_route

T = ROUTE_START


def _make_session(rowcount: int = 1) -> AsyncMock:
    """Create a mock async session."""
    session = AsyncMock()
    result_mock = MagicMock()
    result_mock.rowcount = rowcount
    session.execute = AsyncMock(return_value=result_mock)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


def _session_context(session: AsyncMock) -> Callable[[], AbstractAsyncContextManager[Any]]:
    @asynccontextmanager
    async def context() -> AsyncIterator[AsyncMock]:
        yield session

    return context


def _mapping_result(rows: list[dict[str, Any]]) -> MagicMock:
    result = MagicMock()
    result.mappings.return_value.all.return_value = rows
    return result


def _route_row(route_id: str = "R2024") -> dict[str, Any]:
    return {
        "id": route_id,
        "route_number": 2024,
        "source": "Zagreb Glavni kolodvor",
        "destination": "Split",
        "bikes_allowed": 2,
        "wheelchair_accessible": 0,
        "route_type": 2,
        "expected_start_time": T,
        "expected_end_time": T + ROUTE_DURATION,
        "real_start_time": T + timedelta(minutes=4),
        "real_end_time": None,
    }


def _stop_row(sequence: int) -> dict[str, Any]:
    at = T + timedelta(hours=sequence)
    return {
        "station_id": str(sequence),
        "route_id": "R2024",
        "route_expected_start_time": T,
        "sequence": sequence,
        "real_arrival": None,
        "expected_arrival": at,
        "real_departure": None,
        "expected_departure": at,
    }


class TestRouteStoreReads:
    """Monitor-side reads."""

    @pytest.mark.asyncio
    async def test_get_stations(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(
            return_value=_mapping_result(
                [{"id": "1", "code": 72480, "name": "Zagreb Glavni kolodvor",
                  "latitude": 45.8, "longitude": 15.98}]
            )
        )
        store = RouteStore(session_context=_session_context(session))

        stations = await store.get_stations()

        assert stations == {
            "1": Station(id="1", code=72480, name="Zagreb Glavni kolodvor",
                         latitude=45.8, longitude=15.98)
        }

    @pytest.mark.asyncio
    async def test_get_unfinished_routes_attaches_stops(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(
            side_effect=[
                _mapping_result([_route_row()]),
                _mapping_result([_stop_row(1), _stop_row(2)]),
            ]
        )
        store = RouteStore(session_context=_session_context(session))

        routes = await store.get_unfinished_routes_with_stops()

        assert len(routes) == 1
        route = routes[0]
        assert route.key == ("R2024", T)
        assert route.bikes_allowed is WireFlag.NO
        assert route.wheelchair_accessible is WireFlag.UNSPECIFIED
        assert not route.allows_bikes
        assert route.route_type is RouteType.TRAIN
        assert route.real_start_time == T + timedelta(minutes=4)
        assert [stop.sequence for stop in route.stops] == [1, 2]

        stops_params = session.execute.call_args_list[1].args[1]
        assert stops_params == {"route_id": "R2024", "route_expected_start_time": T}

    @pytest.mark.asyncio
    async def test_unfinished_query_selects_missing_start_or_end(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(return_value=_mapping_result([]))
        store = RouteStore(session_context=_session_context(session))

        assert await store.get_unfinished_routes_with_stops() == []

        sql = str(session.execute.call_args.args[0])
        assert "real_end_time IS NULL OR real_start_time IS NULL" in sql


class TestRouteStoreUpdates:
    """Point updates keyed by compound keys."""

    @pytest.mark.asyncio
    async def test_update_route_real_times(self) -> None:
        session = _make_session()
        store = RouteStore(session_context=_session_context(session))
        real_start = T + timedelta(minutes=5)

        await store.update_route_real_times("R2024", T, real_start, None)

        statement, params = session.execute.call_args.args
        assert "COALESCE(real_start_time, :real_start_time)" in str(statement)
        assert params == {
            "route_id": "R2024",
            "expected_start_time": T,
            "real_start_time": real_start,
            "real_end_time": None,
        }
        session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_update_stop_real_arrival(self) -> None:
        session = _make_session()
        store = RouteStore(session_context=_session_context(session))

        await store.update_stop_real_arrival("R2024", T, 2, T + ROUTE_DURATION)

        statement, params = session.execute.call_args.args
        assert "SET real_arrival = COALESCE(real_arrival, :real_time)" in str(statement)
        assert params["sequence"] == 2
        assert params["real_time"] == T + ROUTE_DURATION

    @pytest.mark.asyncio
    async def test_update_stop_real_departure(self) -> None:
        session = _make_session()
        store = RouteStore(session_context=_session_context(session))

        await store.update_stop_real_departure("R2024", T, 1, T)

        statement, params = session.execute.call_args.args
        assert "SET real_departure = COALESCE(real_departure, :real_time)" in str(statement)
        assert params["route_expected_start_time"] == T

    @pytest.mark.asyncio
    async def test_database_error_becomes_persistence_error(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("down")))
        store = RouteStore(session_context=_session_context(session))

        with pytest.raises(PersistenceError, match="update_route_real_times failed"):
            await store.update_route_real_times("R2024", T, T, None)

        session.rollback.assert_called_once()
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_connection_refused_becomes_persistence_error(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(
            side_effect=ConnectionRefusedError(111, "Connect call failed")
        )
        store = RouteStore(session_context=_session_context(session))

        with pytest.raises(PersistenceError, match="update_stop_real_arrival failed") as exc_info:
            await store.update_stop_real_arrival("R2024", T, 2, T + ROUTE_DURATION)

        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)
        session.rollback.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_rollback_does_not_mask_error(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(side_effect=ConnectionResetError("connection lost"))
        session.rollback = AsyncMock(side_effect=ConnectionResetError("connection lost"))
        store = RouteStore(session_context=_session_context(session))

        with pytest.raises(PersistenceError, match="get_stations failed"):
            await store.get_stations()

    @pytest.mark.asyncio
    async def test_statement_timeout_becomes_persistence_error(self) -> None:
        session = _make_session()
        session.execute = AsyncMock(side_effect=TimeoutError())
        store = RouteStore(session_context=_session_context(session))

        with pytest.raises(PersistenceError):
            await store.update_route_real_times("R2024", T, T, None)


class TestRouteStoreInserts:
    """Ingestion-side inserts."""

    @pytest.mark.asyncio
    async def test_insert_stations_in_batches(self) -> None:
        session = _make_session(rowcount=1)
        store = RouteStore(session_context=_session_context(session), batch_size=2)
        stations = [
            Station(id=str(i), code=i, name=f"Kolodvor {i}", latitude=45.0, longitude=16.0)
            for i in range(3)
        ]

        inserted = await store.insert_stations(stations)

        assert inserted == 2
        assert session.execute.call_count == 2
        statement, params = session.execute.call_args_list[0].args
        assert "ON CONFLICT (id) DO NOTHING" in str(statement)
        assert params["id_0"] == "0"
        assert params["name_1"] == "Kolodvor 1"
        session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_insert_routes_returns_only_new_routes(self) -> None:
        new_route = build_route(route_id="NEW")
        existing_route = build_route(route_id="OLD")

        session = _make_session()
        routes_result = MagicMock()
        routes_result.fetchall.return_value = [("NEW", T)]
        stops_result = MagicMock()
        session.execute = AsyncMock(side_effect=[routes_result, stops_result])
        store = RouteStore(session_context=_session_context(session))

        saved = await store.insert_routes_with_stops([new_route, existing_route])

        assert saved == [new_route]
        routes_statement, routes_params = session.execute.call_args_list[0].args
        assert "RETURNING id, expected_start_time" in str(routes_statement)
        assert routes_params["bikes_allowed_0"] == int(WireFlag.YES)
        assert routes_params["route_type_1"] == int(RouteType.TRAIN)

        stops_statement, stops_params = session.execute.call_args_list[1].args
        assert "ON CONFLICT (route_id, route_expected_start_time, sequence)" in str(
            stops_statement
        )
        assert {stops_params["route_id_0"], stops_params["route_id_1"]} == {"NEW"}
        assert "route_id_2" not in stops_params
        session.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_insert_no_routes_skips_database(self) -> None:
        session = _make_session()
        store = RouteStore(session_context=_session_context(session))

        assert await store.insert_routes_with_stops([]) == []
        session.execute.assert_not_called()
