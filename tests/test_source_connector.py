import logging
import os
from datetime import datetime, timedelta

import duckdb
import pandas as pd
import pytest
from diskcache import Cache

import setup_database as db_setup
from process_staging import run_batch_cycle
from source_connector import SOURCE_COLUMNS, ParquetSource, SourceFile, sync_s3_landing

BASE = datetime(2025, 1, 1, 10, 0)


@pytest.fixture()
def temp_duckdb(tmp_path):
    db_path = tmp_path / "test_source.db"
    db_setup.DB_FILE = str(db_path)
    db_setup.setup_database()
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


def _write_parquet(path, rows):
    df = pd.DataFrame(rows)
    con = duckdb.connect()
    try:
        con.register("rows_df", df)
        con.execute(f"COPY (SELECT * FROM rows_df) TO '{path}' (FORMAT PARQUET)")
    finally:
        con.close()


def _rows(session, n, start=BASE):
    return [
        {
            "event_time": start + timedelta(seconds=i),
            "ad_id": 5,
            "session_id": session,
            "viewer_id": "viewer_1",
            "event_type": 2 if i else 1,
            "channel_id": 10,
        }
        for i in range(n)
    ]


def test_parquet_source_lists_matching_files(tmp_path):
    landing = tmp_path / "landing"
    landing.mkdir()
    _write_parquet(landing / "clickstream_002.parquet", _rows("S2", 1))
    _write_parquet(landing / "clickstream_001.parquet", _rows("S1", 1))
    _write_parquet(landing / "other.parquet", _rows("S3", 1))

    files = ParquetSource(str(landing)).list_files()
    assert [f.name for f in files] == ["clickstream_001.parquet", "clickstream_002.parquet"]
    assert all(isinstance(f.timestamp, datetime) and f.timestamp.tzinfo is None for f in files)


def test_parquet_source_tags_rows(tmp_path):
    landing = tmp_path / "landing"
    landing.mkdir()
    _write_parquet(landing / "clickstream_001.parquet", _rows("S1", 3))

    source_file = SourceFile("clickstream_001.parquet", BASE)
    df = ParquetSource(str(landing)).read([source_file])

    assert list(df.columns) == SOURCE_COLUMNS
    assert list(df["source_row_number"]) == [0, 1, 2]
    assert set(df["source_file_name"]) == {"clickstream_001.parquet"}
    assert list(df["event_type"]) == [1, 2, 2]


def test_parquet_landing_end_to_end(temp_duckdb, tmp_path):
    con = temp_duckdb
    landing = tmp_path / "landing"
    landing.mkdir()
    _write_parquet(landing / "clickstream_001.parquet", _rows("S1", 2))
    source = ParquetSource(str(landing))

    first = run_batch_cycle(con, source, logging.getLogger("test"))
    assert first.rows_appended == 2

    late_rows = _rows("S1", 3, start=BASE - timedelta(minutes=1))
    _write_parquet(landing / "clickstream_002.parquet", late_rows)
    second = run_batch_cycle(con, source, logging.getLogger("test"))
    assert second.files_loaded == 1
    assert second.rows_appended == 3

    assert run_batch_cycle(con, source, logging.getLogger("test")).rows_appended == 0
    assert con.execute("SELECT COUNT(*) FROM click_stream").fetchone()[0] == 5


class FakePaginator:
    def __init__(self, pages):
        self.pages = pages

    def paginate(self, Bucket, Prefix):
        return iter(self.pages)


class FakeS3:
    def __init__(self, objects):
        self.objects = objects  # key -> (etag, body)
        self.downloads = []

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        keys = sorted(self.objects)
        return FakePaginator(
            [
                {"Contents": [{"Key": k, "ETag": self.objects[k][0]} for k in keys[:2]]},
                {"Contents": [{"Key": k, "ETag": self.objects[k][0]} for k in keys[2:]]},
            ]
        )

    def download_file(self, bucket, key, path):
        self.downloads.append(key)
        with open(path, "wb") as f:
            f.write(self.objects[key][1])


def test_sync_s3_landing_downloads_new_objects_once(tmp_path):
    landing = tmp_path / "landing"
    client = FakeS3(
        {
            "raw/clickstream_001.parquet": ('"a1"', b"one"),
            "raw/clickstream_002.parquet": ('"b1"', b"two"),
            "raw/readme.txt": ('"c1"', b"skip"),
        }
    )

    with Cache(str(tmp_path / "cache")) as cache:
        first = sync_s3_landing(client, "bucket", str(landing), cache, prefix="raw/")
        assert first == ["clickstream_001.parquet", "clickstream_002.parquet"]
        assert sorted(os.listdir(landing)) == first

        second = sync_s3_landing(client, "bucket", str(landing), cache, prefix="raw/")
        assert second == []

        client.objects["raw/clickstream_003.parquet"] = ('"d1"', b"three")
        third = sync_s3_landing(client, "bucket", str(landing), cache, prefix="raw/")
        assert third == ["clickstream_003.parquet"]

    assert client.downloads.count("raw/clickstream_001.parquet") == 1
    assert "raw/readme.txt" not in client.downloads


def test_sync_s3_landing_refetches_missing_local_file(tmp_path):
    landing = tmp_path / "landing"
    client = FakeS3({"clickstream_001.parquet": ('"a1"', b"one")})

    with Cache(str(tmp_path / "cache")) as cache:
        sync_s3_landing(client, "bucket", str(landing), cache)
        os.remove(landing / "clickstream_001.parquet")
        again = sync_s3_landing(client, "bucket", str(landing), cache)

    assert again == ["clickstream_001.parquet"]
    assert (landing / "clickstream_001.parquet").read_bytes() == b"one"
