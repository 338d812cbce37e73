"""Tests for NPI API Client"""

import asyncio
import json

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from billinglead_common.models import SearchParams
from billinglead_npi_puller.npi_api_client import NPIClient, NPIRegistryError


def fake_registry(total, fail_skips=()):
    """A ``search`` replacement serving ``total`` numbered records."""
    records = [{"number": str(1000000000 + i)} for i in range(total)]
    calls = []

    async def search(params, session, limit=200, skip=0):
        calls.append((skip, limit))
        if skip in fail_skips:
            raise NPIRegistryError(f"boom at {skip}")
        return {"result_count": total, "results": records[skip:skip + limit]}

    search.calls = calls
    return search


def mock_session_returning(*responses):
    """An aiohttp-like session whose ``get`` yields the given responses in order."""
    session = MagicMock()
    contexts = []
    for response in responses:
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        contexts.append(context)
    session.get = MagicMock(side_effect=contexts)
    return session


def json_response(data, status=200):
    response = AsyncMock()
    response.status = status
    response.json = AsyncMock(return_value=data)
    response.raise_for_status = MagicMock()
    return response


def html_response():
    """A 200 whose body is a maintenance page rather than JSON."""
    response = json_response(None)
    response.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
    return response


def registry_session(total, broken_skips=()):
    """A session serving ``total`` records by skip/limit; ``broken_skips`` answer with HTML."""
    records = [{"number": str(1000000000 + i)} for i in range(total)]

    def get(url, params=None, timeout=None):
        skip, limit = int(params["skip"]), int(params["limit"])
        if skip in broken_skips:
            response = html_response()
        else:
            response = json_response({"result_count": total, "results": records[skip:skip + limit]})
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        return context

    session = MagicMock()
    session.get = MagicMock(side_effect=get)
    return session


class TestNPIClient:
    """Test suite for single registry requests"""

    def test_calculate_backoff_delay(self, registry_settings):
        """Test exponential backoff calculation"""
        client = NPIClient(registry_settings)

        delay_0 = client._calculate_backoff_delay(0)
        assert 1.0 <= delay_0 <= 1.1  # 1s + 10% jitter

        delay_1 = client._calculate_backoff_delay(1)
        assert 2.0 <= delay_1 <= 2.2

        delay_max = client._calculate_backoff_delay(10)
        assert delay_max <= client.MAX_RETRY_DELAY * 1.1

    @pytest.mark.asyncio
    async def test_search_success(self, registry_settings):
        """Test the query parameters and the returned shape"""
        client = NPIClient(registry_settings)
        session = mock_session_returning(
            json_response({"result_count": 2, "results": [{"number": "1"}, {"number": "2"}]})
        )

        data = await client.search(
            SearchParams(taxonomy_description="Cardiology", state="TX"), session, limit=50, skip=100
        )

        assert data["result_count"] == 2
        assert [r["number"] for r in data["results"]] == ["1", "2"]
        url = session.get.call_args.args[0]
        query = session.get.call_args.kwargs["params"]
        assert url == "https://registry.test/api/"
        assert query["version"] == "2.1"
        assert query["taxonomy_description"] == "Cardiology"
        assert query["state"] == "TX"
        assert query["limit"] == "50"
        assert query["skip"] == "100"

    @pytest.mark.asyncio
    async def test_search_limit_is_capped(self, registry_settings):
        client = NPIClient(registry_settings)
        session = mock_session_returning(json_response({"result_count": 0, "results": []}))

        await client.search(SearchParams(state="TX"), session, limit=1000)

        assert session.get.call_args.kwargs["params"]["limit"] == "200"

    @pytest.mark.asyncio
    async def test_search_retries_rate_limit(self, registry_settings):
        """Test retry logic on 429"""
        client = NPIClient(registry_settings)
        session = mock_session_returning(
            json_response({}, status=429),
            json_response({"result_count": 1, "results": [{"number": "1"}]}),
        )

        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            data = await client.search(SearchParams(state="TX"), session)

        assert data["result_count"] == 1
        assert session.get.call_count == 2
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_search_gives_up_after_retry_limit(self, registry_settings):
        """Test that persistent client errors surface as NPIRegistryError"""
        client = NPIClient(registry_settings)
        client.RETRY_LIMIT = 2
        failing = json_response({})
        failing.raise_for_status = MagicMock(side_effect=aiohttp.ClientError("server down"))
        session = mock_session_returning(failing, failing)

        with patch("asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(NPIRegistryError, match="after 2 retries"):
                await client.search(SearchParams(state="TX"), session)

        assert session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_search_timeout_is_retried(self, registry_settings):
        client = NPIClient(registry_settings)
        timed_out = MagicMock()
        timed_out.__aenter__ = AsyncMock(side_effect=asyncio.TimeoutError())
        timed_out.__aexit__ = AsyncMock(return_value=False)
        ok = MagicMock()
        ok.__aenter__ = AsyncMock(return_value=json_response({"result_count": 0, "results": []}))
        ok.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.get = MagicMock(side_effect=[timed_out, ok])

        with patch("asyncio.sleep", new_callable=AsyncMock):
            data = await client.search(SearchParams(state="TX"), session)

        assert data == {"result_count": 0, "results": []}

    @pytest.mark.asyncio
    async def test_search_registry_errors_are_not_retried(self, registry_settings):
        """Test that a rejected query fails immediately"""
        client = NPIClient(registry_settings)
        session = mock_session_returning(
            json_response({"Errors": [{"description": "No valid search criteria"}]})
        )

        with pytest.raises(NPIRegistryError, match="No valid search criteria"):
            await client.search(SearchParams(state="TX"), session)

        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_search_retries_html_body(self, registry_settings):
        """Test that a non-JSON body is retried like a transient error"""
        client = NPIClient(registry_settings)
        session = mock_session_returning(
            html_response(),
            json_response({"result_count": 1, "results": [{"number": "1"}]}),
        )

        with patch("asyncio.sleep", new_callable=AsyncMock):
            data = await client.search(SearchParams(state="TX"), session)

        assert data["results"] == [{"number": "1"}]
        assert session.get.call_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            [{"number": "1"}],
            {"result_count": "many", "results": []},
            {"result_count": 1, "results": "nope"},
        ],
    )
    async def test_search_wrong_body_shape(self, registry_settings, body):
        """Test that unexpected payloads end in NPIRegistryError, never a raw parsing error"""
        client = NPIClient(registry_settings)
        client.RETRY_LIMIT = 2
        session = mock_session_returning(json_response(body), json_response(body))

        with patch("asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(NPIRegistryError, match="malformed response"):
                await client.search(SearchParams(state="TX"), session)

    @pytest.mark.asyncio
    async def test_non_dict_results_are_skipped(self, registry_settings):
        client = NPIClient(registry_settings)
        session = mock_session_returning(
            json_response({"result_count": 2, "results": [{"number": "1"}, "garbage"]})
        )

        data = await client.search(SearchParams(state="TX"), session)

        assert data["results"] == [{"number": "1"}]


class TestFetchAll:
    """Test suite for paginated, wave-based fetching"""

    @pytest.mark.asyncio
    async def test_fetches_every_page(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(450)

        result = await client.fetch_all(SearchParams(taxonomy_description="Cardiology"), session=MagicMock())

        assert len(result.providers) == 450
        assert len({p["number"] for p in result.providers}) == 450
        assert result.total_available == 450
        assert result.last_skip == 450
        assert result.failed_skips == []
        assert result.completion_ratio == 1.0
        assert sorted(skip for skip, _ in client.search.calls) == [0, 200, 400]

    @pytest.mark.asyncio
    async def test_resume_continues_where_the_previous_run_stopped(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(450)
        params = SearchParams(taxonomy_description="Cardiology")

        first = await client.fetch_all(params, max_records=250, session=MagicMock())
        second = await client.fetch_all(params, start_skip=first.last_skip, session=MagicMock())

        assert len(first.providers) == 250
        assert first.last_skip == 250
        assert len(second.providers) == 200
        assert second.last_skip == 450
        numbers = [p["number"] for p in first.providers + second.providers]
        assert len(set(numbers)) == 450

    @pytest.mark.asyncio
    async def test_max_records_smaller_than_a_page(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(450)

        result = await client.fetch_all(SearchParams(state="TX"), max_records=30, session=MagicMock())

        assert len(result.providers) == 30
        assert result.last_skip == 30
        assert client.search.calls == [(0, 30)]

    @pytest.mark.asyncio
    async def test_page_limit_override(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(250)

        result = await client.fetch_all(SearchParams(state="TX"), session=MagicMock(), page_limit=100)

        assert result.last_skip == 250
        assert sorted(client.search.calls) == [(0, 100), (100, 100), (200, 50)]

    @pytest.mark.asyncio
    async def test_failed_page_holds_the_cursor(self, registry_settings):
        """Later pages are still collected, but the cursor stops before the gap"""
        client = NPIClient(registry_settings)
        client.search = fake_registry(1000, fail_skips={400})

        result = await client.fetch_all(SearchParams(state="TX"), session=MagicMock())

        assert result.failed_skips == [400]
        assert result.last_skip == 400
        assert len(result.providers) == 800
        assert result.total_available == 1000

    @pytest.mark.asyncio
    async def test_waves_are_bounded_and_paused(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(1000)

        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await client.fetch_all(SearchParams(state="TX"), session=MagicMock())

        assert result.last_skip == 1000
        # probe, then waves of 3 and 1 pages with one pause between them
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_at_most_max_concurrent_requests_in_flight(self, registry_settings):
        """Pages of a wave overlap, but never more than max_concurrent at once"""
        client = NPIClient(registry_settings)
        records = [{"number": str(i)} for i in range(1000)]
        in_flight = 0
        peak = 0
        started = 0
        batches = []

        async def search(params, session, limit=200, skip=0):
            nonlocal in_flight, peak, started
            in_flight += 1
            started += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            if in_flight == 0:
                batches.append(started)
                started = 0
            return {"result_count": len(records), "results": records[skip:skip + limit]}

        client.search = search

        result = await client.fetch_all(SearchParams(state="TX"), session=MagicMock())

        assert result.last_skip == 1000
        assert peak == registry_settings.max_concurrent
        # the probe alone, then waves of 3 and 1
        assert batches == [1, 3, 1]

    @pytest.mark.asyncio
    async def test_malformed_page_is_reported_not_raised(self, registry_settings):
        """A non-JSON body on one page fails that page only"""
        client = NPIClient(registry_settings)
        session = registry_session(450, broken_skips={200})

        with patch("asyncio.sleep", new_callable=AsyncMock):
            result = await client.fetch_all(SearchParams(state="TX"), session=session)

        assert result.failed_skips == [200]
        assert result.last_skip == 200
        assert len(result.providers) == 250
        assert result.total_available == 450

    @pytest.mark.asyncio
    async def test_no_results(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(0)

        result = await client.fetch_all(SearchParams(state="ZZ"), session=MagicMock())

        assert result.providers == []
        assert result.total_available == 0
        assert result.last_skip == 0

    @pytest.mark.asyncio
    async def test_probe_failure(self, registry_settings):
        client = NPIClient(registry_settings)
        client.search = fake_registry(450, fail_skips={200})

        result = await client.fetch_all(SearchParams(state="TX"), start_skip=200, session=MagicMock())

        assert result.providers == []
        assert result.last_skip == 200
        assert result.failed_skips == [200]

    @pytest.mark.asyncio
    async def test_requires_search_criteria(self, registry_settings):
        client = NPIClient(registry_settings)

        with pytest.raises(ValueError):
            await client.fetch_all(SearchParams(enumeration_type="NPI-1"), session=MagicMock())
