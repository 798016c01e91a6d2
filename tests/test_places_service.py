"""
Tests for the places enrichment cascade and the bulk cache warm job.
"""

import asyncio

import pytest

from conftest import FakeSupabase
from config.metro_centers import MetroCenter
from config.sync_config import PlacesSettings
from services.errors import ConfigError, QuotaExceeded
from services.places_service import (
    FIELD_MASK,
    SCHOOLS,
    TRANSIT,
    PlaceRecord,
    PlacesClient,
    PlacesService,
    dedup_places,
    extract_place_id,
    haversine_km,
    normalize_place,
    parse_formatted_address,
    rank_places,
)

ORIGIN = (43.65, -79.38)


def google_place(place_id, lat, lng, types, name="Union", address="65 Front St W, Toronto, ON"):
    place = {
        "displayName": {"text": name, "languageCode": "en"},
        "formattedAddress": address,
        "location": {"latitude": lat, "longitude": lng},
        "types": types,
    }
    if place_id is not None:
        place["id"] = place_id
    return place


class FakePlacesClient:
    """Answers searchNearby by the first included type"""

    def __init__(self, by_type=None, error=None):
        self.by_type = by_type or {}
        self.error = error
        self.calls = []

    def search_nearby(self, lat, lng, included_types, max_results=20):
        self.calls.append((lat, lng, tuple(included_types), max_results))
        if self.error:
            raise self.error
        return list(self.by_type.get(included_types[0], []))


def make_service(db, config, client, sleep):
    return PlacesService(db, config, client=client, sleep=sleep)


@pytest.mark.unit
class TestHelpers:

    def test_haversine_rounds_to_tenth(self):
        assert haversine_km(43.65, -79.38, 43.65, -79.38) == 0.0
        # Toronto -> Mississauga is about 22 km
        assert 21 < haversine_km(43.65, -79.38, 43.59, -79.64) < 23
        assert haversine_km(43.65, -79.38, 43.59, -79.64) == round(haversine_km(43.65, -79.38, 43.59, -79.64), 1)

    def test_parse_formatted_address(self):
        assert parse_formatted_address("65 Front St W, Toronto, ON M5J 1E6") == \
            ("65 Front St W", "Toronto", "ON M5J 1E6")
        assert parse_formatted_address("Toronto") == ("Toronto", None, "Toronto")
        assert parse_formatted_address(None) == (None, None, None)

    def test_extract_place_id(self):
        assert extract_place_id("places/ChIJabc") == "ChIJabc"
        assert extract_place_id("ChIJabc") == "ChIJabc"
        assert extract_place_id(None) is None

    def test_synthesized_id_when_missing(self):
        record = normalize_place(google_place(None, 43.6, -79.4, ["bus_station"]), TRANSIT)
        assert record.place_id == "transit-43.6--79.4"

    def test_place_without_coordinates_dropped(self):
        place = google_place("places/x", None, -79.4, ["school"])
        assert normalize_place(place, SCHOOLS) is None
        assert dedup_places([place]) == []


@pytest.mark.unit
class TestCategoryLabels:

    @pytest.mark.parametrize("types,label", [
        (["bus_station", "subway_station", "transit_station"], "Subway"),
        (["train_station", "light_rail_station"], "Light Rail"),
        (["train_station", "bus_station"], "Train"),
        (["bus_station", "airport"], "Bus"),
        (["airport", "transit_station"], "Airport"),
        (["transit_station"], "Transit"),
        ([], "Transit"),
    ])
    def test_transit_priority(self, types, label):
        assert TRANSIT.label_for_types(types) == label

    @pytest.mark.parametrize("types,label", [
        (["school", "university", "preschool"], "Preschool"),
        (["secondary_school", "primary_school"], "Elementary"),
        (["school", "secondary_school"], "High School"),
        (["university"], "University / College"),
        (["school"], "School"),
    ])
    def test_school_priority(self, types, label):
        assert SCHOOLS.label_for_types(types) == label

    def test_stored_category_codes(self):
        assert TRANSIT.category_for_types(["bus_station", "subway_station"]) == "subway_station"
        assert TRANSIT.category_for_types(["point_of_interest"]) == "transit_station"
        assert SCHOOLS.category_for_types(["primary_school", "school"]) == "primary_school"
        assert SCHOOLS.category_for_types(["establishment"]) == "school"


@pytest.mark.unit
class TestRanking:

    def record(self, place_id, distance):
        return PlaceRecord(place_id, place_id, "school", "School", 0.0, 0.0, distance_km=distance)

    def test_boundary_inclusive(self):
        records = [self.record("far", 15.1), self.record("edge", 15.0), self.record("near", 0.4)]
        ranked = rank_places(records, 15.0, 20)
        assert [r.place_id for r in ranked] == ["near", "edge"]

    def test_truncates_after_sorting(self):
        records = [self.record(str(d), d) for d in (5.0, 1.0, 3.0, 2.0)]
        assert [r.place_id for r in rank_places(records, 15.0, 2)] == ["1.0", "2.0"]

    def test_computed_distance_boundary(self):
        # 0.1349 degrees of latitude is 15.0 km after rounding; 0.1358 is 15.1 km
        edge = normalize_place(google_place("edge", ORIGIN[0] + 0.1349, ORIGIN[1], ["school"]), SCHOOLS, ORIGIN)
        far = normalize_place(google_place("far", ORIGIN[0] + 0.1358, ORIGIN[1], ["school"]), SCHOOLS, ORIGIN)
        assert edge.distance_km == 15.0
        assert far.distance_km == 15.1
        assert [r.place_id for r in rank_places([far, edge], 15.0, 20)] == ["edge"]


@pytest.mark.unit
class TestNearby:

    def test_cache_hit_short_circuits(self, sync_config, recording_sleep):
        db = FakeSupabase(rpc_results={"places_transport_near": [
            {"place_id": "p1", "name": "Union", "transport_type": "train_station", "address": "65 Front St W",
             "city": "Toronto", "province": "ON", "lat": 43.645, "lng": -79.38, "distance_km": "0.6"},
        ]})
        client = FakePlacesClient()
        service = make_service(db, sync_config, client, recording_sleep)

        records = asyncio.run(service.nearby(TRANSIT, *ORIGIN, limit=5))

        assert client.calls == []
        assert [r.to_response() for r in records] == [{
            "id": "p1", "name": "Union", "type": "Train", "address": "65 Front St W", "city": "Toronto",
            "province": "ON", "lat": 43.645, "lng": -79.38, "distance_km": 0.6,
        }]
        assert db.rpc_calls == [("places_transport_near", {
            "center_lat": 43.65, "center_lng": -79.38, "radius_km": 15.0, "max_count": 5})]

    def test_cache_miss_fans_out_and_writes_back(self, sync_config, recording_sleep):
        db = FakeSupabase()
        shared = google_place("places/union", 43.645, -79.38, ["train_station", "subway_station"])
        client = FakePlacesClient({
            "subway_station": [shared, google_place("places/king", 43.649, -79.378, ["subway_station"])],
            "train_station": [shared],
            "bus_station": [google_place("places/far", 43.72, -79.38, ["bus_station"])],
            "airport": [google_place("places/yyz", 43.70, -79.50, ["airport"])],
        })
        service = make_service(db, sync_config, client, recording_sleep)

        async def scenario():
            found = await service.nearby(TRANSIT, *ORIGIN)
            await service.wait_for_write_backs()
            return found

        records = asyncio.run(scenario())

        assert len(client.calls) == len(TRANSIT.type_groups)
        assert [r.place_id for r in records] == ["king", "union", "far", "yyz"]
        assert records[1].label == "Subway"
        assert [r.distance_km for r in records] == sorted(r.distance_km for r in records)

        saved = db.rows("places_transport")
        assert sorted(r["place_id"] for r in saved) == ["far", "king", "union", "yyz"]
        union = next(r for r in saved if r["place_id"] == "union")
        assert union["transport_type"] == "subway_station"
        assert union["city"] == "Toronto"

    def test_duplicate_ids_persisted_once(self, sync_config, recording_sleep):
        db = FakeSupabase()
        dup = google_place("places/dup", 43.651, -79.381, ["school", "primary_school"])
        client = FakePlacesClient({"school": [dup, dup], "primary_school": [dup]})
        service = make_service(db, sync_config, client, recording_sleep)

        async def scenario():
            found = await service.nearby(SCHOOLS, *ORIGIN)
            await service.wait_for_write_backs()
            return found

        records = asyncio.run(scenario())

        assert [r.place_id for r in records] == ["dup"]
        assert [r["place_id"] for r in db.rows("places_schools")] == ["dup"]
        assert db.rows("places_schools")[0]["level"] == "primary_school"

    def test_failed_group_and_failed_write_back_do_not_fail_request(self, sync_config, recording_sleep):
        db = FakeSupabase()
        db.add_failure(ConnectionError("network down"), table="places_schools", op="upsert")

        class PartlyBroken(FakePlacesClient):
            def search_nearby(self, lat, lng, included_types, max_results=20):
                if included_types[0] == "university":
                    raise RuntimeError("HTTP 500")
                return super().search_nearby(lat, lng, included_types, max_results)

        client = PartlyBroken({"school": [google_place("places/s1", 43.66, -79.39, ["school"])]})
        service = make_service(db, sync_config, client, recording_sleep)

        async def scenario():
            found = await service.nearby(SCHOOLS, *ORIGIN)
            await service.wait_for_write_backs()
            return found

        records = asyncio.run(scenario())

        assert [r.place_id for r in records] == ["s1"]
        assert db.rows("places_schools") == []

    def test_rate_limited_group_fails_request(self, sync_config, recording_sleep):
        db = FakeSupabase()

        class RateLimitedBus(FakePlacesClient):
            def search_nearby(self, lat, lng, included_types, max_results=20):
                if included_types[0] == "bus_station":
                    raise QuotaExceeded("Places API rate limit hit (HTTP 429)")
                return super().search_nearby(lat, lng, included_types, max_results)

        client = RateLimitedBus({"subway_station": [google_place("places/t1", 43.65, -79.38, ["subway_station"])]})
        service = make_service(db, sync_config, client, recording_sleep)

        with pytest.raises(QuotaExceeded):
            asyncio.run(service.nearby(TRANSIT, *ORIGIN))

        assert db.rows("places_transport") == []

    def test_cache_error_treated_as_miss(self, sync_config, recording_sleep):
        db = FakeSupabase()
        db.add_failure(RuntimeError("function does not exist"), table="places_schools_near", op="rpc")
        client = FakePlacesClient({"school": [google_place("places/s1", 43.66, -79.39, ["school"])]})
        service = make_service(db, sync_config, client, recording_sleep)

        async def scenario():
            found = await service.nearby(SCHOOLS, *ORIGIN)
            await service.wait_for_write_backs()
            return found

        assert [r.place_id for r in asyncio.run(scenario())] == ["s1"]

    def test_limit_clamped(self, sync_config, recording_sleep):
        service = make_service(FakeSupabase(), sync_config, FakePlacesClient(), recording_sleep)
        assert service.clamp_limit(None) == 20
        assert service.clamp_limit(0) == 1
        assert service.clamp_limit(500) == 50

    def test_invalid_coordinates(self, sync_config, recording_sleep):
        service = make_service(FakeSupabase(), sync_config, FakePlacesClient(), recording_sleep)
        with pytest.raises(ValueError):
            asyncio.run(service.nearby(TRANSIT, 91.0, 0.0))

    def test_missing_api_key_on_cache_miss(self, sync_config, recording_sleep):
        sync_config.places.api_key = None
        service = make_service(FakeSupabase(), sync_config, FakePlacesClient(), recording_sleep)
        with pytest.raises(ConfigError):
            asyncio.run(service.nearby(TRANSIT, *ORIGIN))


@pytest.mark.unit
class TestWarmCache:

    def test_dedup_across_centers(self, sync_config, recording_sleep):
        db = FakeSupabase()
        client = FakePlacesClient({
            "transit_station": [
                google_place("places/t1", 43.65, -79.38, ["subway_station"]),
                google_place("places/t2", 43.66, -79.39, ["bus_stop"]),
                google_place("places/nocoords", None, None, ["bus_stop"]),
            ],
            "preschool": [google_place("places/s1", 43.65, -79.38, ["school"])],
        })
        service = make_service(db, sync_config, client, recording_sleep)
        centers = [MetroCenter(43.65, -79.38, "Toronto"), MetroCenter(43.68, -79.61, "Etobicoke")]

        result = asyncio.run(service.warm_cache([SCHOOLS, TRANSIT], centers))

        assert result.api_calls == 4
        assert recording_sleep.delays == [0.2] * 4
        assert result.unique_places == {"schools": 1, "transit": 2}
        assert result.exit_code == 0
        assert db.keys("places_transport", "place_id") == ["t1", "t2"]
        assert db.keys("places_schools", "place_id") == ["s1"]
        t2 = next(r for r in db.rows("places_transport") if r["place_id"] == "t2")
        assert t2["transport_type"] == "bus_stop"
        assert t2["types_json"] == ["bus_stop"]
        # warm job searches each kind with its full type list in a single call
        assert client.calls[0][2] == SCHOOLS.warm_types

    def test_failed_call_is_partial(self, sync_config, recording_sleep):
        client = FakePlacesClient(error=RuntimeError("HTTP 500"))
        service = make_service(FakeSupabase(), sync_config, client, recording_sleep)

        result = asyncio.run(service.warm_cache([TRANSIT], [MetroCenter(43.65, -79.38)]))

        assert result.failed_calls == 1
        assert result.exit_code == 2

    def test_quota_aborts(self, sync_config, recording_sleep):
        client = FakePlacesClient(error=QuotaExceeded("429"))
        service = make_service(FakeSupabase(), sync_config, client, recording_sleep)
        centers = [MetroCenter(43.65, -79.38), MetroCenter(45.5, -73.57)]

        result = asyncio.run(service.warm_cache([SCHOOLS, TRANSIT], centers))

        assert result.quota_exhausted
        assert result.exit_code == 1
        assert len(client.calls) == 1


@pytest.mark.unit
class TestPlacesClient:

    def test_request_shape(self, mocker):
        session = mocker.Mock()
        session.post.return_value = mocker.Mock(status_code=200, **{"json.return_value": {"places": [{"id": "x"}]}})
        client = PlacesClient(PlacesSettings(api_key="k"), session=session)

        assert client.search_nearby(43.65, -79.38, ["subway_station"], 20) == [{"id": "x"}]

        _, kwargs = session.post.call_args
        assert kwargs["headers"]["X-Goog-Api-Key"] == "k"
        assert kwargs["headers"]["X-Goog-FieldMask"] == FIELD_MASK
        assert kwargs["json"] == {
            "locationRestriction": {"circle": {"center": {"latitude": 43.65, "longitude": -79.38},
                                               "radius": 15000.0}},
            "includedTypes": ["subway_station"],
            "maxResultCount": 20,
        }

    def test_rate_limited(self, mocker):
        session = mocker.Mock()
        session.post.return_value = mocker.Mock(status_code=429)
        client = PlacesClient(PlacesSettings(api_key="k"), session=session)
        with pytest.raises(QuotaExceeded):
            client.search_nearby(43.65, -79.38, ["school"])

    def test_session_per_call_without_injected_session(self, mocker):
        sessions = []

        def new_session():
            session = mocker.MagicMock()
            session.__enter__.return_value = session
            session.post.return_value = mocker.Mock(status_code=200, **{"json.return_value": {"places": []}})
            sessions.append(session)
            return session

        mocker.patch("services.places_service.requests.Session", side_effect=new_session)
        client = PlacesClient(PlacesSettings(api_key="k"))

        client.search_nearby(43.65, -79.38, ["school"])
        client.search_nearby(43.65, -79.38, ["university"])

        assert len(sessions) == 2
        assert all(s.post.call_count == 1 for s in sessions)
        assert all(s.__exit__.called for s in sessions)
