from __future__ import annotations

import csv
import io
import logging
import re
from datetime import timedelta
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any

from billing.errors import ApiError
from billing.tax_rates import (
    CA_PROVINCES,
    IN_GST_RATE,
    IN_STATES,
    US_STATES,
    JurisdictionRates,
    country_name,
    format_rate,
    is_valid_state,
    lookup_rates,
    product_tax_code,
    state_for_zip,
)

logger = logging.getLogger(__name__)

FIRST_REPORTABLE_YEAR = 2014
US_STATE_SALES_REPORT_HEADER = [
    "Purchase External ID",
    "Purchase Date",
    "Member State of Consumption",
    "Total Transaction",
    "Price",
    "Tax Collected by Platform",
    "Combined Tax Rate",
    "Calculated Tax Amount",
    "Jurisdiction State",
    "Jurisdiction County",
    "Jurisdiction City",
    "State Tax Rate",
    "County Tax Rate",
    "City Tax Rate",
    "Amount not collected by Platform",
    "Platform Product Type",
    "Product Tax Code",
]
CANADA_SALES_REPORT_HEADER = [
    "Sale time",
    "Sale ID",
    "Seller ID",
    "Seller Name",
    "Seller Email",
    "Seller Country",
    "Seller Province",
    "Product ID",
    "Product Name",
    "Product / Subscription",
    "Product Type",
    "Physical/Digital Product",
    "Direct-To-Customer/Buy-Sell Product",
    "Buyer ID",
    "Buyer Name",
    "Buyer Email",
    "Buyer Card",
    "Buyer Country",
    "Buyer State",
    "Price",
    "Total Platform Fee",
    "Discover Fee",
    "Creator Sales Tax",
    "Platform Sales Tax",
    "Shipping",
    "Total",
]
INDIA_SALES_REPORT_HEADER = [
    "ID",
    "Date",
    "Place of Supply (State)",
    "Zip Tax Rate (%) (Rate from Database)",
    "Taxable Value (cents)",
    "Integrated Tax Amount (cents)",
    "Tax Rate (%) (Calculated From Tax Collected)",
    "Expected Tax (cents, rounded)",
    "Expected Tax (cents, floored)",
    "Tax Difference (rounded)",
    "Tax Difference (floored)",
]

_ONE = Decimal("1")
_TENTH = Decimal("0.1")
_EMAIL_LOCAL_TAIL = re.compile(r".{0,4}@")


def _cents(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def _money(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


def mask_email(email: str | None) -> str:
    """Hide the last four characters before the ``@``."""
    return _EMAIL_LOCAL_TAIL.sub("####@", email) if email else ""


def _write_csv(header: list[str], rows: list[list[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


class StoreReportsMixin:
    def _report_period_problems(self, month: int, year: int) -> list[str]:
        problems: list[str] = []
        if year < FIRST_REPORTABLE_YEAR or year > self._now().year:
            problems.append(f"year {year} is out of range")
        if not 1 <= month <= 12:
            problems.append(f"month {month} is out of range")
        return problems

    @staticmethod
    def _raise_report_params(problems: list[str]) -> None:
        if problems:
            raise ApiError(
                code="REPORT_PARAMS_INVALID",
                message="; ".join(problems),
                error_class="validation",
                retryable=False,
                http_status=400,
            )

    def _validate_report_params(self, subdivision_code: str, month: int, year: int) -> None:
        problems = self._report_period_problems(month, year)
        if not is_valid_state(subdivision_code):
            problems.append(f"subdivision code {subdivision_code} is not a US state")
        self._raise_report_params(problems)

    def _settled_purchases(self, month: int, year: int) -> list[dict[str, Any]]:
        """Charged, successful sales created in the month, minus lost disputes."""
        rows: list[dict[str, Any]] = []
        for purchase in self.purchases.values():
            if purchase.get("state") != "successful" or not purchase.get("charge_id"):
                continue
            if purchase.get("chargeback_date") and not purchase.get("chargeback_reversed"):
                continue
            created_at = self._parse_dt(purchase.get("created_at"))
            if created_at is None or created_at.year != year or created_at.month != month:
                continue
            rows.append(purchase)
        return sorted(rows, key=lambda p: str(p.get("created_at", "")))

    def _reportable_purchases(self, subdivision_code: str, month: int, year: int) -> list[dict[str, Any]]:
        return [
            p for p in self._settled_purchases(month, year) if state_for_zip(p.get("zip_code")) == subdivision_code
        ]

    def _store_report(
        self,
        *,
        kind: str,
        category: str,
        filename: str,
        content: str,
        row_count: int,
        title: str,
        message: str,
        **fields: Any,
    ) -> dict[str, Any]:
        storage_uri = self.object_storage.put_object(
            category=category,
            filename=filename,
            content_bytes=content.encode("utf-8"),
            content_type="text/csv",
        )
        report = {
            "report_id": self._new_id("rpt"),
            "kind": kind,
            **fields,
            "row_count": row_count,
            "storage_uri": storage_uri,
            "created_at": self._utcnow_iso(),
        }
        self.reports[report["report_id"]] = report
        self._notify(
            "slack",
            recipient="payments",
            title=title,
            message=message,
            report_id=report["report_id"],
            color="green",
        )
        logger.info(
            "sales_report_created report_id=%s kind=%s month=%s year=%s rows=%s",
            report["report_id"],
            kind,
            fields.get("month"),
            fields.get("year"),
            row_count,
        )
        return report

    # US state sales tax

    def us_state_sales_row(self, purchase: dict[str, Any], *, subdivision_code: str) -> list[str]:
        price = int(purchase["price_cents"])
        tax = int(purchase.get("tax_cents") or 0)
        total = price + tax
        remaining = total - int(purchase.get("refunded_cents") or 0)
        ratio = Decimal(remaining) / Decimal(total) if total else Decimal(0)
        price_cents = _cents(Decimal(price) * ratio)
        tax_cents = _cents(Decimal(tax) * ratio)

        if purchase.get("tax_info"):
            rates: JurisdictionRates | None = JurisdictionRates.from_dict(purchase["tax_info"])
            calculated = tax_cents
        else:
            rates = lookup_rates(purchase.get("zip_code"))
            combined = rates.combined_rate if rates is not None else Decimal(0)
            calculated = _cents(Decimal(price_cents) * combined)

        product = self.products.get(purchase["product_id"]) or {}
        native_type = product.get("native_type", "digital")
        created_at = self._parse_dt(purchase.get("created_at"))
        return [
            purchase["purchase_id"],
            created_at.strftime("%m/%d/%Y") if created_at else "",
            US_STATES[subdivision_code],
            _money(remaining),
            _money(price_cents),
            _money(tax_cents),
            format_rate(rates.combined_rate) if rates else "",
            _money(calculated),
            rates.state if rates else subdivision_code,
            (rates.county or "") if rates else "",
            (rates.city or "") if rates else "",
            format_rate(rates.state_rate) if rates else "",
            format_rate(rates.county_rate) if rates else "",
            format_rate(rates.city_rate) if rates else "",
            _money(calculated - tax_cents),
            native_type,
            product_tax_code(native_type),
        ]

    def build_us_state_sales_csv(self, *, subdivision_code: str, month: int, year: int) -> tuple[str, int]:
        purchases = self._reportable_purchases(subdivision_code, month, year)
        rows = [self.us_state_sales_row(p, subdivision_code=subdivision_code) for p in purchases]
        return _write_csv(US_STATE_SALES_REPORT_HEADER, rows), len(rows)

    def create_us_state_sales_report(self, *, subdivision_code: str, month: int, year: int) -> dict[str, Any]:
        subdivision_code = str(subdivision_code).upper()
        month = int(month)
        year = int(year)
        self._validate_report_params(subdivision_code, month, year)
        content, row_count = self.build_us_state_sales_csv(subdivision_code=subdivision_code, month=month, year=year)
        return self._store_report(
            kind="us_state_sales",
            category=f"sales_tax/{subdivision_code.lower()}",
            filename=f"{subdivision_code.lower()}-sales-report-{year}-{month:02d}.csv",
            content=content,
            row_count=row_count,
            title="US Sales Tax Reporting",
            message=f"{US_STATES[subdivision_code]} sales report for {year}-{month:02d} is ready ({row_count} rows)",
            subdivision_code=subdivision_code,
            month=month,
            year=year,
        )

    # Canada: every sale made by a Canadian seller, wherever the buyer is.

    def canada_sales_row(self, purchase: dict[str, Any]) -> list[str]:
        seller = self.sellers.get(purchase["seller_id"]) or {}
        product = self.products.get(purchase["product_id"]) or {}
        native_type = product.get("native_type", "digital")
        physical = native_type == "physical"
        buyer_country = str(purchase.get("country") or "").upper()
        region = str(purchase.get("region") or "").upper()
        created_at = self._parse_dt(purchase.get("created_at"))
        price = int(purchase["price_cents"])
        tax = int(purchase.get("tax_cents") or 0)
        shipping = int(purchase.get("shipping_cents") or 0)
        return [
            created_at.strftime("%Y-%m-%d %H:%M:%S UTC") if created_at else "",
            purchase["purchase_id"],
            purchase["seller_id"],
            seller.get("name") or seller.get("legal_name") or "",
            mask_email(seller.get("email")),
            country_name(seller.get("country")),
            CA_PROVINCES.get(str(seller.get("province") or "").upper(), ""),
            purchase["product_id"],
            product.get("name", ""),
            "Subscription" if purchase.get("subscription_id") else "Product",
            native_type,
            "Physical" if physical else "Digital",
            "DTC" if physical else "BS",
            purchase.get("buyer_id") or "",
            "",
            mask_email(purchase.get("email")),
            purchase.get("card_visual") or "",
            country_name(buyer_country),
            region if buyer_country == "CA" and region in CA_PROVINCES else "Uncategorized",
            str(price),
            str(int(purchase.get("fee_cents") or 0)),
            str(int(purchase.get("discover_fee_cents") or 0)),
            # Sellers never collect tax themselves; all tax is platform-collected.
            "0",
            str(tax),
            str(shipping),
            str(price + tax + shipping),
        ]

    def build_canada_sales_csv(self, *, month: int, year: int) -> tuple[str, int]:
        purchases = [
            p
            for p in self._settled_purchases(month, year)
            if (self.sellers.get(p["seller_id"]) or {}).get("country") == "CA"
        ]
        rows = [self.canada_sales_row(p) for p in purchases]
        return _write_csv(CANADA_SALES_REPORT_HEADER, rows), len(rows)

    def create_canada_sales_report(self, *, month: int, year: int) -> dict[str, Any]:
        month = int(month)
        year = int(year)
        self._raise_report_params(self._report_period_problems(month, year))
        content, row_count = self.build_canada_sales_csv(month=month, year=year)
        return self._store_report(
            kind="canada_sales",
            category="sales_tax/ca",
            filename=f"canada-sales-report-{year}-{month:02d}.csv",
            content=content,
            row_count=row_count,
            title="Canada Sales Fees Reporting",
            message=f"Canada sales report for {year}-{month:02d} is ready ({row_count} rows)",
            month=month,
            year=year,
        )

    # India: GST reconciliation for sales to Indian consumers.

    def india_sales_row(self, purchase: dict[str, Any]) -> list[str]:
        price = int(purchase["price_cents"])
        collected = int(purchase.get("tax_cents") or 0)
        expected = Decimal(price) * IN_GST_RATE
        expected_rounded = _cents(expected)
        expected_floored = int(expected.quantize(_ONE, rounding=ROUND_FLOOR))
        if price and collected:
            collected_rate = str((Decimal(collected) * 100 / Decimal(price)).quantize(_TENTH, rounding=ROUND_HALF_UP))
        else:
            collected_rate = "0"
        region = str(purchase.get("region") or "").upper()
        created_at = self._parse_dt(purchase.get("created_at"))
        return [
            purchase["purchase_id"],
            created_at.strftime("%Y-%m-%d") if created_at else "",
            region if region in IN_STATES else "",
            format_rate(IN_GST_RATE * 100),
            str(price),
            str(collected),
            collected_rate,
            str(expected_rounded),
            str(expected_floored),
            str(expected_rounded - collected),
            str(expected_floored - collected),
        ]

    def build_india_sales_csv(self, *, month: int, year: int) -> tuple[str, int]:
        purchases: list[dict[str, Any]] = []
        for purchase in self._settled_purchases(month, year):
            if str(purchase.get("country") or "").upper() != "IN":
                continue
            # Business sales are reverse-charged by the buyer.
            if purchase.get("business_vat_id"):
                continue
            total = int(purchase["price_cents"]) + int(purchase.get("tax_cents") or 0)
            if total and int(purchase.get("refunded_cents") or 0) >= total:
                continue
            purchases.append(purchase)
        rows = [self.india_sales_row(p) for p in purchases]
        return _write_csv(INDIA_SALES_REPORT_HEADER, rows), len(rows)

    def create_india_sales_report(self, *, month: int | None = None, year: int | None = None) -> dict[str, Any]:
        if month is None or year is None:
            previous = self._now().date().replace(day=1) - timedelta(days=1)
            month, year = previous.month, previous.year
        month = int(month)
        year = int(year)
        self._raise_report_params(self._report_period_problems(month, year))
        content, row_count = self.build_india_sales_csv(month=month, year=year)
        return self._store_report(
            kind="india_sales",
            category="sales_tax/in",
            filename=f"india-sales-report-{year}-{month:02d}.csv",
            content=content,
            row_count=row_count,
            title="India Sales Reporting",
            message=f"India sales report for {year}-{month:02d} is ready ({row_count} rows)",
            month=month,
            year=year,
        )

    def get_report(self, report_id: str) -> dict[str, Any]:
        return self._require(self.reports, report_id, kind="report")

    def report_download_url(self, report_id: str) -> str:
        report = self.get_report(report_id)
        return self.object_storage.download_url(storage_uri=report["storage_uri"])
