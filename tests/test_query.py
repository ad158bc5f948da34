import asyncio

from chainfeed.abi import CUSTOM_MINTED, PRESET_MINTED
from chainfeed.config import parse_config
from chainfeed.errors import ConfigurationError, TransportError
from chainfeed.models import Entity, EventFilter, SortBy
from chainfeed.service import FeedService
from conftest import ALICE, BOB, CONTRACT, FakeHttp, mint_log

API_URL = "https://scan.example/api"


def make_cfg(**overrides):
    raw = {
        "CHAIN_ID": 8453,
        "SOURCE": "log_scan",
        "LOG_SCAN_API_URL": API_URL,
        "LOG_SCAN_API_KEY": "KEY",
        "RPC_URL": "https://rpc.example",
        "REQUEST_INTERVAL_MS": 0,
        "ITEM_INTERVAL_MS": 0,
        "CACHE_TTL_SEC": 60,
        "STREAMS": [{"name": "mints", "kind": "mint", "address": CONTRACT}],
    }
    raw.update(overrides)
    return parse_config(raw)


def serve_logs(http, preset, custom=()):
    def handler(url, params):
        if url != API_URL:
            return {"name": "meta"}
        logs = preset if params["topic0"] == PRESET_MINTED.topic0 else list(custom)
        if not logs:
            return {"status": "0", "message": "No records found", "result": []}
        return {"status": "1", "message": "OK", "result": list(logs)}

    http.get_handler = handler


def scan_calls(http):
    return [c for c in http.get_calls if c[0] == API_URL]


def test_fetch_cycle_reconciles_optimistic_entries(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE, 7: BOB}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10), mint_log(PRESET_MINTED.topic0, BOB, 7, 20)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")
    query.add_optimistic(Entity(subject_id=7, owner="0x" + "00" * 19 + "01"))
    assert [e.subject_id for e in query.state.entities] == [7]

    query.set_view(sort_by=SortBy.BY_ID)
    state = asyncio.run(query.run())

    assert state.error is None
    assert not state.is_loading
    assert [e.subject_id for e in state.entities] == [3, 7]
    assert state.entities[1].owner == BOB
    assert not state.entities[1].optimistic
    assert len(query.ledger) == 0


def test_cached_result_is_reused_until_ttl(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")

    asyncio.run(query.run())
    assert len(scan_calls(http)) == 2
    asyncio.run(query.run())
    assert len(scan_calls(http)) == 2
    asyncio.run(query.run(force_refresh=True))
    assert len(scan_calls(http)) == 4
    clock.advance(61)
    asyncio.run(query.run())
    assert len(scan_calls(http)) == 6


def test_transport_error_keeps_last_view_as_stale(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")
    asyncio.run(query.run())

    def failing(url, params):
        raise TransportError("HTTP error! status: 503", status=503)

    http.get_handler = failing
    state = asyncio.run(query.run(force_refresh=True))
    assert isinstance(state.error, TransportError)
    assert state.stale
    assert [e.subject_id for e in state.entities] == [3]


def test_transport_error_without_prior_view(http, rpc, clock, fake_sleep):
    http.get_handler = lambda url, params: {"status": "0", "message": "NOTOK", "result": "Invalid API Key"}
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    state = asyncio.run(service.query("mints").run())
    assert isinstance(state.error, TransportError)
    assert not state.stale
    assert state.entities == []


def test_missing_api_key_is_configuration_error(http, rpc, clock, fake_sleep):
    service = FeedService(make_cfg(LOG_SCAN_API_KEY=""), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    state = asyncio.run(service.query("mints").run())
    assert isinstance(state.error, ConfigurationError)
    assert state.entities == []
    assert http.get_calls == []


def test_missing_rpc_is_configuration_error_for_log_scan_mints(http, clock, fake_sleep):
    service = FeedService(make_cfg(RPC_URL=""), http=http, clock=clock, sleep=fake_sleep)
    state = asyncio.run(service.query("mints").run())
    assert isinstance(state.error, ConfigurationError)
    assert http.get_calls == []


def test_indexer_source_needs_no_rpc(http, clock, fake_sleep):
    http.post_handler = lambda url, payload: {
        "data": {
            "nfts": [
                {"tokenId": "5", "owner": ALICE, "blockNumber": "9", "mintedAt": "1", "tokenURI": None},
            ]
        }
    }
    cfg = make_cfg(SOURCE="indexer", INDEXER_URL="https://indexer.example", RPC_URL="")
    service = FeedService(cfg, http=http, clock=clock, sleep=fake_sleep)
    state = asyncio.run(service.query("mints").run())
    assert state.error is None
    assert [(e.subject_id, e.owner) for e in state.entities] == [(5, ALICE)]


def test_only_mine_without_actor_is_empty(http, rpc, clock, fake_sleep):
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")
    state = asyncio.run(query.run(EventFilter(CONTRACT, only_mine=True)))
    assert state.entities == []
    assert state.error is None
    assert http.get_calls == []


def test_owner_query_filters_by_actor(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE}
    serve_logs(http, [], [mint_log(CUSTOM_MINTED.topic0, ALICE, 3, 10, uri="ipfs://Qm3")])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints", owner=ALICE.upper().replace("0X", "0x"))
    assert query is service.query("mints", owner=ALICE)
    state = asyncio.run(query.run())
    assert [e.subject_id for e in state.entities] == [3]
    assert state.entities[0].metadata.name == "meta"
    assert all(p.get("topic1") for _, p in scan_calls(http))


def test_subscribers_see_loading_then_result(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")
    seen = []
    unsubscribe = query.subscribe(seen.append)
    asyncio.run(query.run())
    unsubscribe()
    assert seen[0].is_loading
    assert not seen[-1].is_loading
    assert [e.subject_id for e in seen[-1].entities] == [3]
    assert seen[-1].progress == (1, 1)
    count = len(seen)
    asyncio.run(query.run(force_refresh=True))
    assert len(seen) == count


def test_rollback_optimistic_removes_pending(http, rpc, clock, fake_sleep):
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")
    query.add_optimistic(Entity(subject_id=11, owner=ALICE))
    assert query.rollback_optimistic(11)
    assert query.state.entities == []
    assert not query.rollback_optimistic(11)


def test_superseded_cycle_never_reaches_the_cache(rpc, clock, fake_sleep):
    rpc.owners = {1: ALICE, 2: ALICE}
    old = {"status": "1", "message": "OK", "result": [mint_log(PRESET_MINTED.topic0, ALICE, 1, 10)]}
    new = {"status": "1", "message": "OK", "result": [mint_log(PRESET_MINTED.topic0, ALICE, 2, 20)]}
    empty = {"status": "0", "message": "No records found", "result": []}

    class SlowFirstHttp(FakeHttp):
        gate = None

        async def get_json(self, url, params=None):
            self.get_calls.append((url, params))
            if len(self.get_calls) == 1:
                await self.gate.wait()
                return old
            return new if params["topic0"] == PRESET_MINTED.topic0 else empty

    http = SlowFirstHttp()

    async def scenario():
        http.gate = asyncio.Event()
        service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
        query = service.query("mints")
        first = asyncio.ensure_future(query.run(force_refresh=True))
        for _ in range(3):
            await asyncio.sleep(0)
        second = await query.run(force_refresh=True)
        http.gate.set()
        await first
        return service, second, query.state

    service, second, final = asyncio.run(scenario())
    assert [e.subject_id for e in second.entities] == [2]
    assert [e.subject_id for e in final.entities] == [2]
    assert not final.is_loading
    key = service.filter_for("mints").cache_key()
    assert [e.subject_id for e in service.cache.get(key).events] == [2]


def test_cancel_abandons_the_running_cycle(rpc, clock, fake_sleep):
    class HangingHttp(FakeHttp):
        async def get_json(self, url, params=None):
            self.get_calls.append((url, params))
            await asyncio.Event().wait()

    http = HangingHttp()

    async def scenario():
        service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
        query = service.query("mints")
        running = asyncio.ensure_future(query.run())
        for _ in range(3):
            await asyncio.sleep(0)
        query.cancel()
        state = await running
        return service, state

    service, state = asyncio.run(scenario())
    assert state.error is None
    assert not state.is_loading
    assert len(service.cache) == 0
    assert len(http.get_calls) == 1


def test_rpc_outage_keeps_last_view_as_stale(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE, 7: BOB}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10), mint_log(PRESET_MINTED.topic0, BOB, 7, 20)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")
    asyncio.run(query.run())

    rpc.down = True
    state = asyncio.run(query.run(force_refresh=True))
    assert isinstance(state.error, TransportError)
    assert state.stale
    assert [e.subject_id for e in state.entities] == [7, 3]


def test_warm_cache_reuses_enrichment(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE, 7: BOB}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10), mint_log(PRESET_MINTED.topic0, BOB, 7, 20)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")

    asyncio.run(query.run())
    probes = len(rpc.calls)
    assert probes == 4
    state = asyncio.run(query.run())
    assert len(rpc.calls) == probes
    assert [e.subject_id for e in state.entities] == [7, 3]
    asyncio.run(query.run(force_refresh=True))
    assert len(rpc.calls) == 2 * probes


def test_filter_change_drops_the_earlier_run(rpc, clock, fake_sleep):
    rpc.owners = {1: BOB, 2: ALICE}
    everyone = {"status": "1", "message": "OK", "result": [mint_log(PRESET_MINTED.topic0, BOB, 1, 10)]}
    mine = {"status": "1", "message": "OK", "result": [mint_log(PRESET_MINTED.topic0, ALICE, 2, 20)]}
    empty = {"status": "0", "message": "No records found", "result": []}

    class SlowUnfilteredHttp(FakeHttp):
        gate = None

        async def get_json(self, url, params=None):
            self.get_calls.append((url, params))
            if "topic1" not in params:
                await self.gate.wait()
                return everyone if params["topic0"] == PRESET_MINTED.topic0 else empty
            return mine if params["topic0"] == PRESET_MINTED.topic0 else empty

    http = SlowUnfilteredHttp()

    async def scenario():
        http.gate = asyncio.Event()
        service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
        query = service.query("mints")
        everything = asyncio.ensure_future(query.run(service.filter_for("mints")))
        for _ in range(3):
            await asyncio.sleep(0)
        await query.run(service.filter_for("mints", owner=ALICE))
        http.gate.set()
        await everything
        return service, query.state

    service, state = asyncio.run(scenario())
    assert [e.subject_id for e in state.entities] == [2]
    assert not state.is_loading
    assert service.cache.get(service.filter_for("mints").cache_key()) is None


def test_concurrent_shared_runs_join_one_cycle(http, rpc, clock, fake_sleep):
    rpc.owners = {3: ALICE}
    serve_logs(http, [mint_log(PRESET_MINTED.topic0, ALICE, 3, 10)])
    service = FeedService(make_cfg(), http=http, rpc=rpc, clock=clock, sleep=fake_sleep)
    query = service.query("mints")

    async def scenario():
        return await asyncio.gather(query.run_shared(), query.run_shared(force_refresh=True))

    first, second = asyncio.run(scenario())
    assert [e.subject_id for e in first.entities] == [3]
    assert second is first
    assert len(scan_calls(http)) == 2
