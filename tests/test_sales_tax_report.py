from __future__ import annotations

import csv
import io
from decimal import Decimal

import pytest
from freezegun import freeze_time

from billing.errors import ApiError
from billing.store import InMemoryStore
from billing.store_reports import (
    CANADA_SALES_REPORT_HEADER,
    INDIA_SALES_REPORT_HEADER,
    US_STATE_SALES_REPORT_HEADER,
    mask_email,
)
from billing.tax_rates import format_rate, lookup_rates, product_tax_code, state_for_zip

REPORT_DAY = "2024-03-01 06:00:00"


def _seed(s: InMemoryStore) -> None:
    s.upsert_seller(seller_id="sel_1", email="seller@example.com")
    s.upsert_product(product_id="prd_1", seller_id="sel_1", name="Field notes")
    s.upsert_product(product_id="prd_course", seller_id="sel_1", name="Course", native_type="course")


def _sale(s: InMemoryStore, purchase_id: str, *, day: str = "2024-02-10 15:30:00", **fields) -> dict:
    values = {
        "seller_id": "sel_1",
        "product_id": "prd_1",
        "email": "buyer@example.com",
        "price_cents": 1000,
        "state": "successful",
        "charge_id": f"ch_{purchase_id}",
        "zip_code": "98121",
    }
    values.update(fields)
    with freeze_time(day):
        return s.upsert_purchase(purchase_id=purchase_id, **values)


def _rows(s: InMemoryStore, state: str = "WA") -> list[list[str]]:
    with freeze_time(REPORT_DAY):
        content, _ = s.build_us_state_sales_csv(subdivision_code=state, month=2, year=2024)
    return list(csv.reader(io.StringIO(content)))


def test_state_lookup_by_zip_prefix():
    assert state_for_zip("98121-1234") == "WA"
    assert state_for_zip("00501") == "NY"
    assert state_for_zip("94016") == "CA"
    assert state_for_zip("712") is None
    assert state_for_zip(None) is None


def test_rate_helpers():
    assert format_rate(Decimal("0.0650")) == "0.065"
    assert format_rate("0") == "0"
    assert lookup_rates("98121").combined_rate == Decimal("0.1035")
    assert lookup_rates("55555") is None
    assert product_tax_code("course") == "86132000A0001"
    assert product_tax_code("bundle") == "31000"


def test_report_row_uses_zip_rates_when_no_tax_info_was_stored():
    s = InMemoryStore()
    _seed(s)
    _sale(s, "pur_wa", tax_cents=104)

    rows = _rows(s)

    assert rows[0] == US_STATE_SALES_REPORT_HEADER
    assert rows[1] == [
        "pur_wa",
        "02/10/2024",
        "Washington",
        "11.04",
        "10.00",
        "1.04",
        "0.1035",
        "1.04",
        "WA",
        "KING",
        "SEATTLE",
        "0.065",
        "0.004",
        "0.0115",
        "0.00",
        "digital",
        "31000",
    ]


def test_partially_refunded_sale_reports_remaining_amounts():
    s = InMemoryStore()
    _seed(s)
    _sale(s, "pur_refund", zip_code="98184", refunded_cents=500)

    row = _rows(s)[1]

    assert row[3] == "5.00"
    assert row[4] == "5.00"
    assert row[5] == "0.00"
    assert row[7] == "0.51"
    assert row[14] == "0.51"


def test_stored_tax_info_takes_precedence():
    s = InMemoryStore()
    _seed(s)
    _sale(
        s,
        "pur_info",
        product_id="prd_course",
        zip_code="98604",
        tax_cents=78,
        tax_info={
            "state": "WA",
            "county": "CLARK",
            "city": None,
            "state_rate": "0.065",
            "county_rate": "0.003",
            "city_rate": "0.01",
            "combined_rate": "0.078",
        },
    )

    row = _rows(s)[1]

    assert row[6] == "0.078"
    assert row[7] == "0.78"
    assert row[9] == "CLARK"
    assert row[10] == ""
    assert row[14] == "0.00"
    assert row[15:] == ["course", "86132000A0001"]


def test_only_settled_sales_in_the_state_and_month_are_reported():
    s = InMemoryStore()
    _seed(s)
    _sale(s, "pur_keep_late", day="2024-02-20 00:00:00")
    _sale(s, "pur_keep_early", day="2024-02-02 00:00:00")
    _sale(s, "pur_failed", state="failed")
    _sale(s, "pur_uncharged", charge_id=None)
    _sale(s, "pur_disputed", chargeback_date="2024-02-15T00:00:00+00:00")
    _sale(s, "pur_won", chargeback_date="2024-02-15T00:00:00+00:00", chargeback_reversed=True)
    _sale(s, "pur_california", zip_code="94016")
    _sale(s, "pur_january", day="2024-01-31 23:59:59")

    ids = [row[0] for row in _rows(s)[1:]]

    assert ids == ["pur_keep_early", "pur_won", "pur_keep_late"]
    assert [row[0] for row in _rows(s, "CA")[1:]] == ["pur_california"]


@freeze_time(REPORT_DAY)
def test_invalid_report_parameters_are_rejected_together():
    s = InMemoryStore()

    with pytest.raises(ApiError) as exc:
        s.create_us_state_sales_report(subdivision_code="ZZ", month=13, year=2025)

    assert exc.value.code == "REPORT_PARAMS_INVALID"
    assert "year 2025" in exc.value.message
    assert "month 13" in exc.value.message
    assert "ZZ" in exc.value.message


@freeze_time(REPORT_DAY)
def test_report_is_stored_and_announced():
    s = InMemoryStore()
    _seed(s)
    _sale(s, "pur_wa", tax_cents=104)

    report = s.create_us_state_sales_report(subdivision_code="wa", month=2, year=2024)

    assert report["subdivision_code"] == "WA"
    assert report["row_count"] == 1
    assert report["storage_uri"] == "object://local/billing-reports/sales_tax/wa/wa-sales-report-2024-02.csv"
    content = s.object_storage.get_object(storage_uri=report["storage_uri"]).decode("utf-8")
    assert content.splitlines()[1].startswith("pur_wa,02/10/2024,Washington,11.04")
    assert s.report_download_url(report["report_id"]).startswith("file://")
    announcement = s.list_outbox_events(event_type="notification.slack")[0]["payload"]
    assert announcement["recipient"] == "payments"
    assert announcement["message"] == "Washington sales report for 2024-02 is ready (1 rows)"


@freeze_time(REPORT_DAY)
def test_report_job_runs_through_worker_runtime():
    s = InMemoryStore()
    _seed(s)
    job = s.enqueue_job(
        job_type="create_sales_tax_report",
        payload={"subdivision_code": "WA", "month": 2, "year": 2024},
    )

    out = s.run_job_once(job_id=job["job_id"])

    assert out["final_status"] == "succeeded"
    assert out["result"]["row_count"] == 0
    assert s.get_report(out["result"]["report_id"])["kind"] == "us_state_sales"


# Canada


def _seed_canada(s: InMemoryStore) -> None:
    s.upsert_seller(
        seller_id="sel_ca",
        email="maple@example.com",
        name="Maple Press",
        country="CA",
        province="BC",
    )
    s.upsert_seller(seller_id="sel_es", email="sol@example.com", country="ES")
    s.upsert_product(product_id="prd_ca", seller_id="sel_ca", name="Zine")
    s.upsert_product(product_id="prd_es", seller_id="sel_es", name="Poster")


def _canada_sale(s: InMemoryStore, purchase_id: str, **fields) -> dict:
    values = {
        "seller_id": "sel_ca",
        "product_id": "prd_ca",
        "fee_cents": 137,
        "card_visual": "**** **** **** 4242",
        "zip_code": None,
    }
    values.update(fields)
    return _sale(s, purchase_id, **values)


def test_email_masking_hides_the_end_of_the_local_part():
    assert mask_email("maple@example.com") == "m####@example.com"
    assert mask_email("ab@example.com") == "####@example.com"
    assert mask_email(None) == ""


def test_canada_report_covers_every_sale_by_canadian_sellers():
    s = InMemoryStore()
    _seed_canada(s)
    _canada_sale(s, "pur_ontario", country="CA", region="on")
    _canada_sale(s, "pur_us", day="2024-02-11 09:00:00", country="US", zip_code="22207")
    _canada_sale(s, "pur_spain", day="2024-02-12 09:00:00", country="ES", region="MD")
    _canada_sale(s, "pur_march", day="2024-03-01 00:00:00", country="CA", region="QC")
    _sale(s, "pur_other_seller", seller_id="sel_es", product_id="prd_es", country="ES")

    with freeze_time(REPORT_DAY):
        content, row_count = s.build_canada_sales_csv(month=2, year=2024)
    rows = list(csv.reader(io.StringIO(content)))

    assert row_count == 3
    assert rows[0] == CANADA_SALES_REPORT_HEADER
    assert rows[1] == [
        "2024-02-10 15:30:00 UTC",
        "pur_ontario",
        "sel_ca",
        "Maple Press",
        "m####@example.com",
        "Canada",
        "British Columbia",
        "prd_ca",
        "Zine",
        "Product",
        "digital",
        "Digital",
        "BS",
        "",
        "",
        "b####@example.com",
        "**** **** **** 4242",
        "Canada",
        "ON",
        "1000",
        "137",
        "0",
        "0",
        "0",
        "0",
        "1000",
    ]
    assert [(r[1], r[17], r[18]) for r in rows[2:]] == [
        ("pur_us", "United States", "Uncategorized"),
        ("pur_spain", "Spain", "Uncategorized"),
    ]


@freeze_time(REPORT_DAY)
def test_canada_report_rejects_out_of_range_periods():
    s = InMemoryStore()

    with pytest.raises(ApiError) as exc:
        s.create_canada_sales_report(month=13, year=2013)

    assert exc.value.code == "REPORT_PARAMS_INVALID"
    assert "year 2013" in exc.value.message
    assert "month 13" in exc.value.message


@freeze_time(REPORT_DAY)
def test_canada_report_job_stores_and_announces():
    s = InMemoryStore()
    _seed_canada(s)
    _canada_sale(s, "pur_ontario", country="CA", region="ON")
    job = s.enqueue_job(job_type="create_canada_sales_report", payload={"month": 2, "year": 2024})

    out = s.run_job_once(job_id=job["job_id"])

    report = s.get_report(out["result"]["report_id"])
    assert report["kind"] == "canada_sales"
    assert report["row_count"] == 1
    assert report["storage_uri"] == "object://local/billing-reports/sales_tax/ca/canada-sales-report-2024-02.csv"
    announcement = s.list_outbox_events(event_type="notification.slack")[0]["payload"]
    assert announcement["title"] == "Canada Sales Fees Reporting"
    assert announcement["color"] == "green"


# India


def _india_sale(s: InMemoryStore, purchase_id: str, **fields) -> dict:
    values = {"country": "IN", "zip_code": None}
    values.update(fields)
    return _sale(s, purchase_id, **values)


def test_india_report_compares_collected_gst_with_expected():
    s = InMemoryStore()
    _seed(s)
    _india_sale(s, "pur_mumbai", region="MH", tax_cents=180)
    _india_sale(s, "pur_bengaluru", day="2024-02-11 00:00:00", region="ka", price_cents=1003, tax_cents=180)
    _india_sale(s, "pur_unknown_state", day="2024-02-12 00:00:00", region="123", price_cents=500)
    _india_sale(s, "pur_business", business_vat_id="GST123456789", tax_cents=0)
    _india_sale(s, "pur_refunded", tax_cents=180, refunded_cents=1180)
    _sale(s, "pur_us")

    with freeze_time(REPORT_DAY):
        content, row_count = s.build_india_sales_csv(month=2, year=2024)
    rows = list(csv.reader(io.StringIO(content)))

    assert rows[0] == INDIA_SALES_REPORT_HEADER
    assert row_count == 3
    assert rows[1] == ["pur_mumbai", "2024-02-10", "MH", "18", "1000", "180", "18.0", "180", "180", "0", "0"]
    assert rows[2] == ["pur_bengaluru", "2024-02-11", "KA", "18", "1003", "180", "17.9", "181", "180", "1", "0"]
    assert rows[3] == ["pur_unknown_state", "2024-02-12", "", "18", "500", "0", "0", "90", "90", "90", "90"]


@freeze_time("2024-03-15 08:00:00")
def test_india_report_defaults_to_the_previous_month():
    s = InMemoryStore()
    _seed(s)
    _india_sale(s, "pur_mumbai", region="MH", tax_cents=180)

    report = s.create_india_sales_report()

    assert (report["month"], report["year"]) == (2, 2024)
    assert report["row_count"] == 1
    assert report["storage_uri"].endswith("/sales_tax/in/india-sales-report-2024-02.csv")
    announcement = s.list_outbox_events(event_type="notification.slack")[0]["payload"]
    assert announcement["title"] == "India Sales Reporting"


@freeze_time(REPORT_DAY)
def test_india_report_rejects_out_of_range_periods():
    s = InMemoryStore()

    with pytest.raises(ApiError) as exc:
        s.create_india_sales_report(month=0, year=2023)

    assert exc.value.code == "REPORT_PARAMS_INVALID"
    assert "month 0" in exc.value.message
