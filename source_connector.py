"""
Source connectors for raw click-stream files.

A source lists the files it can offer and reads a chosen subset into a
DataFrame of raw events tagged with source_file_name, source_file_timestamp
and source_row_number. Files are treated as immutable once written; the
file ledger only compares names.
"""
import fnmatch
import glob
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import boto3
import duckdb
import pandas as pd

logger = logging.getLogger("source_connector")

RAW_COLUMNS = [
    "event_time",
    "ad_id",
    "session_id",
    "viewer_id",
    "event_type",
    "channel_id",
]
SOURCE_COLUMNS = RAW_COLUMNS + [
    "source_file_name",
    "source_file_timestamp",
    "source_row_number",
]


@dataclass(frozen=True)
class SourceFile:
    name: str
    timestamp: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _tag_rows(df: pd.DataFrame, source_file: SourceFile) -> pd.DataFrame:
    df = df.reindex(columns=RAW_COLUMNS).copy()
    df["source_file_name"] = source_file.name
    df["source_file_timestamp"] = pd.Timestamp(source_file.timestamp)
    df["source_row_number"] = range(len(df))
    return df


def _concat(frames: List[pd.DataFrame]) -> pd.DataFrame:
    if not frames:
        return pd.DataFrame(columns=SOURCE_COLUMNS)
    return pd.concat(frames, ignore_index=True)[SOURCE_COLUMNS]


class ParquetSource:
    """Parquet files in a local landing directory, matched by a glob pattern."""

    def __init__(self, landing_dir: str, pattern: str = "clickstream*.parquet"):
        self.landing_dir = landing_dir
        self.pattern = pattern

    def list_files(self) -> List[SourceFile]:
        paths = sorted(glob.glob(os.path.join(self.landing_dir, self.pattern)))
        files = []
        for path in paths:
            mtime = datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc)
            files.append(SourceFile(os.path.basename(path), mtime.replace(tzinfo=None)))
        logger.info(f"Listed {len(files)} files matching {self.pattern} in {self.landing_dir}")
        return files

    def read(self, files: List[SourceFile]) -> pd.DataFrame:
        frames = []
        con = duckdb.connect()
        try:
            for source_file in files:
                path = os.path.join(self.landing_dir, source_file.name)
                escaped = path.replace("'", "''")
                df = con.execute(
                    f"SELECT * FROM read_parquet('{escaped}', file_row_number = true)"
                ).df()
                row_numbers = df.pop("file_row_number")
                df = _tag_rows(df, source_file)
                df["source_row_number"] = row_numbers.values
                logger.info(f"Read {len(df)} rows from {source_file.name}")
                frames.append(df)
        finally:
            con.close()
        return _concat(frames)


class DataFrameSource:
    """In-memory source: one DataFrame per logical file name."""

    def __init__(
        self, frames: Dict[str, pd.DataFrame], file_timestamp: Optional[datetime] = None
    ):
        self.frames = dict(frames)
        self.file_timestamp = file_timestamp or _utc_now()

    def list_files(self) -> List[SourceFile]:
        return [SourceFile(name, self.file_timestamp) for name in sorted(self.frames)]

    def read(self, files: List[SourceFile]) -> pd.DataFrame:
        return _concat([_tag_rows(self.frames[f.name], f) for f in files])


# --- S3 landing -------------------------------------------------------------------


def get_s3_client():
    """Initializes an S3 client from environment credentials (or the default chain)."""
    region = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")
    access_key = os.getenv("AWS_ACCESS_KEY_ID")
    secret_key = os.getenv("AWS_SECRET_ACCESS_KEY")
    session_token = os.getenv("AWS_SESSION_TOKEN")

    if access_key and secret_key:
        client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            aws_session_token=session_token,
        )
    else:
        client = boto3.client("s3", region_name=region)
    logger.info("Successfully created S3 client.")
    return client


def sync_s3_landing(
    client,
    bucket: str,
    landing_dir: str,
    cache,
    prefix: str = "",
    pattern: str = "clickstream*.parquet",
    ttl_seconds: int = 1209600,
) -> List[str]:
    """
    Download matching objects under s3://bucket/prefix into landing_dir.

    cache is a diskcache.Cache of "bucket/key" -> ETag for objects already
    downloaded, so repeated syncs only fetch new objects. Returns the file
    names downloaded by this call.
    """
    os.makedirs(landing_dir, exist_ok=True)
    downloaded = []
    paginator = client.get_paginator("list_objects_v2")

    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            key = obj["Key"]
            name = os.path.basename(key)
            if not name or not fnmatch.fnmatch(name, pattern):
                continue

            cache_key = f"{bucket}/{key}"
            etag = obj.get("ETag")
            dest = os.path.join(landing_dir, name)
            cached_etag = cache.get(cache_key)
            if cached_etag is not None and os.path.exists(dest):
                if cached_etag == etag:
                    continue
                # Same name, new content: the ledger will still treat it as loaded
                logger.warning(
                    f"Object {cache_key} changed after download (etag {cached_etag} -> {etag})"
                )

            tmp_path = dest + ".part"
            client.download_file(bucket, key, tmp_path)
            os.replace(tmp_path, dest)
            cache.set(cache_key, etag, expire=ttl_seconds)
            downloaded.append(name)

    logger.info(f"Synced {len(downloaded)} new objects from s3://{bucket}/{prefix}")
    return downloaded
