"""Blob storage for attachment bytes: local directory or an S3-compatible bucket."""
import os
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import ClientError


class StorageError(Exception):
    pass


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return default if raw is None else raw.strip().lower() in {"1", "true", "yes", "on"}


def backend_name() -> str:
    return os.getenv("STORAGE_BACKEND", "local").lower()


def upload_dir() -> Path:
    return Path(os.getenv("UPLOAD_DIR", "./data/uploads")).expanduser()


@lru_cache(maxsize=1)
def _get_client() -> BaseClient:
    # STORAGE_ENDPOINT points at MinIO or another S3-compatible server; unset means AWS
    session = boto3.session.Session(
        aws_access_key_id=os.getenv("STORAGE_ACCESS_KEY_ID"),
        aws_secret_access_key=os.getenv("STORAGE_SECRET_ACCESS_KEY"),
        region_name=os.getenv("STORAGE_REGION", "us-east-1"),
    )
    style = "path" if _env_flag("STORAGE_FORCE_PATH_STYLE", True) else "auto"
    return session.client(
        "s3",
        endpoint_url=os.getenv("STORAGE_ENDPOINT"),
        config=Config(signature_version="s3v4", s3={"addressing_style": style}),
    )


def bucket_name() -> str:
    bucket = os.getenv("STORAGE_BUCKET")
    if not bucket:
        raise StorageError("STORAGE_BUCKET is not set")
    return bucket


def object_key_for(sha256: str) -> str:
    # content addressed: identical bytes always land on the same key
    return f"attachments/{sha256[:2]}/{sha256}"


def _local_path(key: str) -> Path:
    root = upload_dir().resolve()
    path = (root / key).resolve()
    if root not in path.parents:
        raise StorageError(f"Refusing to touch {key} outside the upload directory")
    return path


def put_bytes(key: str, data: bytes, content_type: str) -> None:
    if backend_name() == "s3":
        try:
            _get_client().put_object(Bucket=bucket_name(), Key=key, Body=data, ContentType=content_type)
        except ClientError as exc:
            raise StorageError(str(exc)) from exc
        return
    path = _local_path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.part")
    tmp.write_bytes(data)
    tmp.replace(path)


def get_bytes(key: str) -> bytes:
    if backend_name() == "s3":
        try:
            response = _get_client().get_object(Bucket=bucket_name(), Key=key)
        except ClientError as exc:
            raise StorageError(str(exc)) from exc
        body = response.get("Body")
        if body is None:
            raise StorageError("Object body missing")
        return body.read()
    try:
        return _local_path(key).read_bytes()
    except OSError as exc:
        raise StorageError(str(exc)) from exc


def delete_objects(keys: Iterable[str]) -> None:
    items = [k for k in keys if k]
    if not items:
        return
    if backend_name() == "s3":
        try:
            _get_client().delete_objects(
                Bucket=bucket_name(), Delete={"Objects": [{"Key": k} for k in items], "Quiet": True}
            )
        except ClientError as exc:
            raise StorageError(str(exc)) from exc
        return
    for key in items:
        _local_path(key).unlink(missing_ok=True)
