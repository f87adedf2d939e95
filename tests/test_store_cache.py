from __future__ import annotations

from datetime import date

from conftest import hm, sched
from redis.exceptions import ConnectionError as RedisConnectionError

from nextbus.domain.models import Route, Stop
from nextbus.services import fast_cache
from nextbus.services.fast_cache import MemoryCache, RedisCache
from nextbus.services.mappings import load_route_mapping, load_stop_id_map
from nextbus.services.route_names import RouteNameCache
from nextbus.services.store import InMemoryStore


def test_replace_sorts_and_deduplicates():
    st = InMemoryStore()
    a = sched(1, "A", hm(8, 20))
    b = sched(1, "B", hm(8, 5))
    count = st.replace_scheduled_arrivals([a, b, a])
    assert count == 2
    assert st.get_scheduled_arrivals(1, 0) == [b, a]
    assert st.get_scheduled_arrivals(1, 6) == []


def test_store_snapshot_round_trip(tmp_path):
    st = InMemoryStore()
    st.put_stop(Stop(stop_id=1, name="Main & 1st", lat=37.1, lon=-122.1, bearing=90.0))
    st.put_route(Route(route_id="A", name="10", stops=[1], start=date(2024, 1, 1)))
    st.replace_scheduled_arrivals([sched(1, "A", hm(8, 0))])

    path = tmp_path / "snap" / "store.json"
    st.save(path)

    loaded = InMemoryStore()
    loaded.load(path)
    assert loaded.get_stops([1])[0].name == "Main & 1st"
    assert loaded.get_route("A").start == date(2024, 1, 1)
    assert loaded.get_scheduled_arrivals(1, 0) == st.get_scheduled_arrivals(1, 0)


def test_memory_cache_expiry(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(fast_cache.time, "monotonic", lambda: now[0])
    cache = MemoryCache(default_ttl=10)
    cache.set("k", {"v": 1})
    cache.set("forever", 1, ttl=0)
    assert cache.get("k") == {"v": 1}
    now[0] += 11
    assert cache.get("k") is None
    assert cache.get("forever") == 1
    assert cache.delete("forever") is True
    assert cache.delete("forever") is False


class _FakeRedis:
    def __init__(self, broken: bool = False):
        self.data: dict[str, str] = {}
        self.broken = broken

    def _check(self):
        if self.broken:
            raise RedisConnectionError("redis gone")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        return True

    def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0


def test_redis_cache_json_values_with_prefix():
    client = _FakeRedis()
    cache = RedisCache(client)
    cache.set("arrivals:1:Monday", [{"a": 1}])
    assert "nextbus:arrivals:1:Monday" in client.data
    assert cache.get("arrivals:1:Monday") == [{"a": 1}]
    assert cache.delete("arrivals:1:Monday")
    assert cache.get("arrivals:1:Monday") is None


def test_redis_errors_are_misses():
    cache = RedisCache(_FakeRedis(broken=True))
    assert cache.get("k") is None
    assert cache.set("k", 1) is False
    assert cache.delete("k") is False


def test_route_name_cache_invalidation():
    st = InMemoryStore()
    st.put_route(Route(route_id="A", name="10"))
    names = RouteNameCache(st)
    assert names.name_for("A") == "10"
    assert names.name_for("Z") == "Z"

    st.put_route(Route(route_id="A", name="10X"))
    assert names.name_for("A") == "10"
    names.invalidate("A")
    assert names.name_for("A") == "10X"


def test_mapping_csvs(tmp_path):
    routes_csv = tmp_path / "routes.csv"
    routes_csv.write_text("\ufeffFeed_Route_ID,Route_ID\nR1,1\nR2,2\n,3\n", encoding="utf-8")
    stops_csv = tmp_path / "stops.csv"
    stops_csv.write_text("stop_id,stop_number\nSF-1,101\nSF-2,abc\n", encoding="utf-8")

    mapping = load_route_mapping(str(routes_csv))
    assert mapping.to_system("R1") == "1"
    assert mapping.to_feed("2") == ["R2"]
    assert "R1" in mapping and "R3" not in mapping

    assert load_stop_id_map(str(stops_csv)) == {"SF-1": 101}
