import asyncio

from campaign_data.barb_loader import (
    clear_barb_tables,
    dedupe_rows,
    extract_reference_entities,
    filter_spots,
    populate_barb,
    spot_matrix,
    stations_for_filters,
    transform_spot,
)
from campaign_data.db import Database


def _spot(number, station="ITV1", advertiser="Acme Foods", brand="Acme Crisps", buyer="Mediacom", views=None):
    return {
        "broadcaster_spot_number": number,
        "commercial_number": f"CN{number}",
        "spot_start_datetime": {"standard_datetime": "2025-03-01 20:15:00"},
        "station": {"station_code": f"S-{station}", "station_name": station},
        "preceding_programme_name": "News at Ten",
        "clearcast_information": {
            "advertiser_code": "A1",
            "advertiser_name": advertiser,
            "product_code": "P1",
            "product_name": brand,
            "buyer_code": "B1",
            "buyer_name": buyer,
        },
        "campaign_approval_id": "CAMP1",
        "spot_duration": 30,
        "audience_views": views
        if views is not None
        else [
            {"audience_code": 1, "description": "All Individuals", "audience_size_hundreds": 120},
            {"audience_code": 2, "description": "Adults 16-34", "audience_size_hundreds": 40},
        ],
    }


def test_transform_spot_one_row_per_audience():
    rows = transform_spot(_spot(101))
    assert [r["id"] for r in rows] == ["101_1", "101_2"]
    assert rows[0]["date"] == "2025-03-01"
    assert rows[0]["time"] == "20:15:00"
    assert rows[0]["channel_name"] == "ITV1"
    assert rows[0]["advertiser_id"] == "A1"
    assert rows[1]["impacts"] == 40
    assert rows[1]["audience_segment"] == "Adults 16-34"


def test_transform_spot_without_views():
    spot = _spot(102, views=[])
    spot["spot_start_datetime"] = None
    spot["broadcaster_spot_number"] = None
    rows = transform_spot(spot, "2025-03-02")
    assert len(rows) == 1
    assert rows[0]["id"] == "CN102"
    assert rows[0]["impacts"] == 0
    assert rows[0]["date"] == "2025-03-02"
    assert rows[0]["audience_code"] is None


def test_transform_spot_without_any_key_is_skipped():
    spot = _spot(103)
    spot["broadcaster_spot_number"] = None
    spot["commercial_number"] = ""
    assert transform_spot(spot) == []

    other = _spot(104)
    other["broadcaster_spot_number"] = None
    other["commercial_number"] = None
    rows = dedupe_rows(r for s in (spot, other, _spot(105)) for r in transform_spot(s))
    assert [r["id"] for r in rows] == ["105_1", "105_2"]


def test_dedupe_keeps_first_and_drops_missing_ids():
    rows = [{"id": "a", "n": 1}, {"id": "a", "n": 2}, {"id": None, "n": 3}, {"id": "b", "n": 4}]
    assert dedupe_rows(rows) == [{"id": "a", "n": 1}, {"id": "b", "n": 4}]


def test_extract_reference_entities():
    rows = transform_spot(_spot(101))
    rows.append({"advertiser_id": "A2", "advertiser_name": None, "brand_id": "P2", "brand_name": "Orphan"})
    rows.append({"campaign_id": "C9", "campaign_name": "Spring", "advertiser_id": "A3", "advertiser_name": "Beta", "brand_id": "P3", "brand_name": "Beta One"})
    entities = extract_reference_entities(rows)

    assert entities["barb_advertisers"] == [{"id": "A1", "name": "Acme Foods"}, {"id": "A3", "name": "Beta"}]
    assert [b["id"] for b in entities["barb_brands"]] == ["P1", "P3"]
    assert entities["barb_campaigns"][0]["id"] == "C9"
    assert len(entities["barb_campaigns"]) == 1
    assert entities["barb_buyers"] == [{"id": "B1", "name": "Mediacom"}]
    assert entities["barb_stations"] == [{"id": "S-ITV1", "name": "ITV1"}]


def test_filter_and_station_lookup():
    spots = [
        _spot(1, station="ITV1"),
        _spot(2, station="Channel 4", brand="Acme Dip"),
        _spot(3, station="Sky One", advertiser="Other Co", buyer="Zenith"),
        {"clearcast_information": None, "station": None},
    ]
    assert len(filter_spots(spots, advertiser="ACME")) == 2
    assert len(filter_spots(spots, brand="dip")) == 1
    assert len(filter_spots(spots, agency="zenith")) == 1
    assert len(filter_spots(spots)) == 4

    found = stations_for_filters(spots, advertiser="acme")
    assert found["total_spots"] == 4
    assert found["filtered_spots"] == 2
    assert found["stations"] == ["Channel 4", "ITV1"]


def test_spot_matrix():
    spots = [
        _spot(1, station="ITV1"),
        _spot(2, station="ITV1", views=[{"description": "Adults 16-34", "audience_size_hundreds": 200}]),
        _spot(3, station="C4", views=[{"description": None, "audience_size_hundreds": None}]),
    ]
    matrix = spot_matrix(spots)
    assert matrix[0] == {"station": "C4", "audience": "Unknown", "count": 1, "sum_audience_hundreds": 0}
    assert matrix[1] == {"station": "ITV1", "audience": "Adults 16-34", "count": 2, "sum_audience_hundreds": 240}
    assert matrix[2] == {"station": "ITV1", "audience": "All Individuals", "count": 1, "sum_audience_hundreds": 120}


class StubClient:
    def __init__(self, spots):
        self.spots = spots
        self.dates = []

    async def list_advertisers(self):
        return [{"id": 7, "name": "Acme Foods"}, {"id": None, "name": "skip"}]

    async def list_buyers(self):
        return [{"id": "B9", "name": "Zenith"}]

    async def list_stations(self):
        return [{"id": "S-ITV1", "name": "ITV1", "region": "London"}, None]

    async def list_advertising_spots(self, date_from, date_to=None, **filters):
        self.dates.append(date_from)
        return self.spots


def test_populate_barb(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    client = StubClient([_spot(101), _spot(101), _spot(102, views=[])])

    summary = asyncio.run(populate_barb(db, client, "2025-03-01"))

    assert client.dates == ["2025-03-01"]
    assert summary["errors"] == []
    assert summary["spots_fetched"] == 3
    assert summary["barb_spots"] == 3
    assert db.count("barb_spots") == 3
    assert db.select("barb_spots", ["impacts"], {"id": "101_1"}) == [{"impacts": 120}]
    assert db.count("barb_advertisers") == 2
    assert db.count("barb_buyers") == 2
    assert db.select("barb_stations", ["name", "region"], {"id": "S-ITV1"}) == [{"name": "ITV1", "region": "London"}]

    cleared = clear_barb_tables(db)
    assert cleared["barb_spots"] == 3
    assert db.count("barb_spots") == 0
    assert db.count("barb_stations") == 0
    db.close()
