"""
Click fraud evaluation over click_session_arrays: pattern matching, the
trailing window boundary, click counting and committed-only reads.
"""
import csv
import logging
import time
from datetime import datetime, timedelta, timezone

import duckdb
import pandas as pd
import pytest

import setup_database as db_setup
from enrichment import EnrichmentResolver
from gold_transforms import (
    FraudFlag,
    detect_click_fraud,
    run_gold_transforms,
    summarize_fraud_by_advertiser,
    write_fraud_report,
)
from process_staging import run_batch_cycle
from source_connector import DataFrameSource

BASE = datetime(2025, 1, 1, 10, 0)


@pytest.fixture()
def temp_duckdb(tmp_path):
    db_path = tmp_path / "test_fraud.db"
    db_setup.DB_FILE = str(db_path)
    db_setup.setup_database()
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


def _evt(session, ts, event_type, ad_id=5, viewer="viewer_1", channel=10):
    return {
        "event_time": ts,
        "ad_id": ad_id,
        "session_id": session,
        "viewer_id": viewer,
        "event_type": event_type,
        "channel_id": channel,
    }


def _load(con, file_name, rows):
    source = DataFrameSource({file_name: pd.DataFrame(rows)}, file_timestamp=BASE)
    return run_batch_cycle(con, source, logging.getLogger("test"))


def test_click_without_completion_is_flagged(temp_duckdb):
    con = temp_duckdb
    _load(
        con,
        "clickstream_001.parquet",
        [_evt("S1", BASE, 1), _evt("S1", BASE + timedelta(seconds=2), 2)],
    )

    flags = list(detect_click_fraud(con, now=BASE + timedelta(seconds=3)))
    assert flags == [
        FraudFlag(
            session_start=BASE,
            session_id="S1",
            ad_id=5,
            fraudulent_click_count=1,
            count=2,
            all_events=[1, 2],
            distinct_events=[1, 2],
        )
    ], flags

    # Another click in the same group, in a later batch
    _load(con, "clickstream_002.parquet", [_evt("S1", BASE + timedelta(seconds=3), 2)])
    flags = list(detect_click_fraud(con, now=BASE + timedelta(seconds=3)))
    assert len(flags) == 1
    assert flags[0].fraudulent_click_count == 2
    assert flags[0].all_events == [1, 2, 2]
    assert flags[0].count == 3


def test_completed_session_is_not_flagged(temp_duckdb):
    con = temp_duckdb
    _load(
        con,
        "clickstream_001.parquet",
        [
            _evt("S1", BASE, 1),
            _evt("S1", BASE + timedelta(seconds=1), 2),
            _evt("S1", BASE + timedelta(seconds=2), 9),
        ],
    )
    assert list(detect_click_fraud(con, now=BASE + timedelta(minutes=1))) == []


def test_completion_in_later_batch_clears_flag(temp_duckdb):
    con = temp_duckdb
    _load(con, "clickstream_001.parquet", [_evt("S1", BASE, 2)])
    assert len(list(detect_click_fraud(con, now=BASE))) == 1

    _load(con, "clickstream_002.parquet", [_evt("S1", BASE + timedelta(seconds=5), 9)])
    assert list(detect_click_fraud(con, now=BASE)) == []


def test_session_without_click_is_not_flagged(temp_duckdb):
    con = temp_duckdb
    _load(con, "clickstream_001.parquet", [_evt("S1", BASE, 1), _evt("S1", BASE, 3)])
    assert list(detect_click_fraud(con, now=BASE)) == []


def test_window_boundary_is_inclusive(temp_duckdb):
    con = temp_duckdb
    now = BASE + timedelta(days=1)
    _load(
        con,
        "clickstream_001.parquet",
        [
            _evt("S_EDGE", BASE, 2),
            _evt("S_OLD", BASE - timedelta(microseconds=1), 2),
        ],
    )

    flagged = {f.session_id for f in detect_click_fraud(con, now=now, window=timedelta(days=1))}
    assert flagged == {"S_EDGE"}, f"Boundary handling wrong: {flagged}"


def test_timezone_aware_now_is_compared_in_utc(temp_duckdb):
    con = temp_duckdb
    _load(con, "clickstream_001.parquet", [_evt("S1", BASE, 2)])

    # 11:00 Berlin == 10:00 UTC, so a zero-width window still includes BASE
    now = pd.Timestamp("2025-01-01 11:00", tz="Europe/Berlin").to_pydatetime()
    flags = list(detect_click_fraud(con, now=now, window=timedelta(0)))
    assert [f.session_id for f in flags] == ["S1"]

    later = datetime(2025, 1, 1, 10, 0, 1, tzinfo=timezone.utc)
    assert list(detect_click_fraud(con, now=later, window=timedelta(0))) == []


def test_repeated_clicks_are_uncapped(temp_duckdb):
    con = temp_duckdb
    rows = [_evt("S1", BASE, 1)] + [
        _evt("S1", BASE + timedelta(seconds=i), 2) for i in range(1, 8)
    ]
    _load(con, "clickstream_001.parquet", rows)

    (flag,) = list(detect_click_fraud(con, now=BASE))
    assert flag.fraudulent_click_count == 7
    assert flag.distinct_events == [1, 2]
    assert flag.count == 8


def test_groups_are_split_by_ad(temp_duckdb):
    con = temp_duckdb
    _load(
        con,
        "clickstream_001.parquet",
        [
            _evt("S1", BASE, 1, ad_id=None),
            _evt("S1", BASE + timedelta(seconds=1), 2, ad_id=5),
            _evt("S1", BASE + timedelta(seconds=2), 2, ad_id=6),
            _evt("S1", BASE + timedelta(seconds=3), 9, ad_id=6),
        ],
    )

    flags = list(detect_click_fraud(con, now=BASE))
    assert [(f.ad_id, f.fraudulent_click_count) for f in flags] == [(5, 1)], flags


def test_click_with_null_ad_is_flagged(temp_duckdb):
    con = temp_duckdb
    _load(con, "clickstream_001.parquet", [_evt("S1", BASE, 2, ad_id=None)])

    flags = list(detect_click_fraud(con, now=BASE))
    assert len(flags) == 1
    assert flags[0].ad_id is None


def test_custom_event_codes(temp_duckdb):
    con = temp_duckdb
    _load(
        con,
        "clickstream_001.parquet",
        [_evt("S1", BASE, 4), _evt("S2", BASE, 4), _evt("S2", BASE, 7)],
    )

    flags = list(detect_click_fraud(con, now=BASE, click_code=4, terminal_code=7))
    assert [f.session_id for f in flags] == ["S1"]


def test_results_are_single_pass_and_recall_rescans(temp_duckdb):
    con = temp_duckdb
    _load(con, "clickstream_001.parquet", [_evt("S1", BASE, 2), _evt("S2", BASE, 2)])

    flags = detect_click_fraud(con, now=BASE, fetch_size=1)
    assert len(list(flags)) == 2
    assert list(flags) == [], "A consumed result sequence must not restart"

    assert len(list(detect_click_fraud(con, now=BASE))) == 2


def test_invalid_arguments_raise_before_scanning(temp_duckdb):
    con = temp_duckdb
    with pytest.raises(ValueError):
        detect_click_fraud(con, now=BASE, click_code=2, terminal_code=2)
    with pytest.raises(ValueError):
        detect_click_fraud(con, now=BASE, window=timedelta(days=-1))
    with pytest.raises(ValueError):
        detect_click_fraud(con, now=BASE, fetch_size=0)


def test_generous_timeout_completes(temp_duckdb):
    con = temp_duckdb
    _load(con, "clickstream_001.parquet", [_evt("S1", BASE, 2)])

    flags = list(detect_click_fraud(con, now=BASE, timeout_seconds=30))
    assert len(flags) == 1


def _fill_flagged_groups(con, n):
    con.execute(
        """
        INSERT INTO click_session_arrays
        SELECT ?, 'S_' || CAST(i AS VARCHAR), CAST(i % 1000 AS INTEGER), [1, 2], [1, 2], 2
        FROM range(?) t(i)
        """,
        [BASE, n],
    )


def test_slow_scan_raises_timeout(temp_duckdb):
    con = temp_duckdb
    _fill_flagged_groups(con, 3_000_000)

    flags = detect_click_fraud(con, now=BASE, timeout_seconds=0.05)
    with pytest.raises(TimeoutError):
        list(flags)


def test_timeout_covers_fetches_after_first_row(temp_duckdb):
    con = temp_duckdb
    _fill_flagged_groups(con, 200_000)

    flags = detect_click_fraud(con, now=BASE, timeout_seconds=0.5, fetch_size=1)
    with pytest.raises(TimeoutError):
        next(flags)
        time.sleep(1.0)
        for _ in flags:
            pass


def test_uncommitted_rows_are_not_visible(temp_duckdb):
    con = temp_duckdb
    con.begin()
    con.execute(
        """
        INSERT INTO click_session_arrays
        VALUES (?, 'S_PENDING', 5, [2], [2], 1)
        """,
        [BASE],
    )
    try:
        assert list(detect_click_fraud(con, now=BASE)) == []
    finally:
        con.rollback()


def test_summary_by_advertiser_and_report(temp_duckdb, tmp_path):
    con = temp_duckdb
    resolver = EnrichmentResolver(con)
    resolver.load_ads(pd.DataFrame({"ad_id": [5, 6], "campaign_id": [100, 200]}))
    resolver.load_campaigns(
        pd.DataFrame({"campaign_id": [100, 200], "advertiser_id": [7000, 8000]})
    )
    _load(
        con,
        "clickstream_001.parquet",
        [
            _evt("S1", BASE, 2, ad_id=5),
            _evt("S1", BASE, 2, ad_id=5),
            _evt("S2", BASE, 2, ad_id=6),
            _evt("S3", BASE, 2, ad_id=None),
        ],
    )

    flags = run_gold_transforms(con, logging.getLogger("test"), now=BASE)
    assert len(flags) == 3

    summary = summarize_fraud_by_advertiser(con, flags)
    # resolved and unresolved advertisers together must stay integer ids
    assert summary["advertiser_id"].dtype == "Int64"
    rows = {
        (None if pd.isna(adv) else adv): (int(groups), int(clicks))
        for adv, groups, clicks in zip(
            summary["advertiser_id"].tolist(),
            summary["flagged_groups"],
            summary["fraudulent_clicks"],
        )
    }
    assert rows == {7000: (1, 2), 8000: (1, 1), None: (1, 1)}, rows

    report_path = tmp_path / "reports" / "click_fraud.csv"
    assert write_fraud_report(flags, str(report_path)) == 3
    with open(report_path, newline="") as f:
        report = list(csv.DictReader(f))
    assert [r["session_id"] for r in report] == ["S1", "S2", "S3"]
    assert report[0]["fraudulent_click_count"] == "2"


def test_empty_summary_has_columns(temp_duckdb):
    summary = summarize_fraud_by_advertiser(temp_duckdb, [])
    assert list(summary.columns) == ["advertiser_id", "flagged_groups", "fraudulent_clicks"]
    assert summary.empty
