from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    url_expiry_s: int


class ObjectStorageBackend:
    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        self._url_expiry_s = config.url_expiry_s

    def build_key(self, *, category: str, filename: str) -> str:
        base = "/".join(_clean_segment(part) for part in category.split("/") if part.strip())
        key = f"{base}/{_clean_segment(filename)}"
        return f"{self._prefix}/{key}" if self._prefix else key

    def uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def put_object(
        self,
        *,
        category: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        raise NotImplementedError

    def get_object(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def download_url(self, *, storage_uri: str) -> str:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def put_object(
        self,
        *,
        category: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self.build_key(category=category, filename=filename)
        path = self._root / self._bucket / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)
        meta = {"content_type": content_type or "application/octet-stream", "created_at": _now_iso()}
        Path(f"{path}.meta.json").write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        return self.uri_for_key(key)

    def _path_for_uri(self, storage_uri: str) -> Path:
        parsed = parse_storage_uri(storage_uri)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        return self._root / parsed["bucket"] / parsed["key"]

    def get_object(self, *, storage_uri: str) -> bytes:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.read_bytes()

    def download_url(self, *, storage_uri: str) -> str:
        return self._path_for_uri(storage_uri).resolve().as_uri()


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        try:
            import boto3  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_object(
        self,
        *,
        category: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self.build_key(category=category, filename=filename)
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return self.uri_for_key(key)

    def get_object(self, *, storage_uri: str) -> bytes:
        parsed = parse_storage_uri(storage_uri)
        response = self._client.get_object(Bucket=parsed["bucket"], Key=parsed["key"])
        return response["Body"].read()

    def download_url(self, *, storage_uri: str) -> str:
        parsed = parse_storage_uri(storage_uri)
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": parsed["bucket"], "Key": parsed["key"]},
            ExpiresIn=self._url_expiry_s,
        )


def parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    parts = uri[len("object://") :].split("/", 2)
    if len(parts) != 3:
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}


def _flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return env.get(name, default).strip().lower() not in {"0", "false", "no", "off"}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("BILLING_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    try:
        url_expiry_s = int(env.get("OBJECT_STORAGE_URL_EXPIRY_S", "604800"))
    except ValueError:
        url_expiry_s = 604800
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "billing-reports").strip() or "billing-reports",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/billing-object-storage").strip() or "/tmp/billing-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", "true"),
        url_expiry_s=max(60, url_expiry_s),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend != "local":
        raise RuntimeError(f"unsupported object storage backend: {config.backend}")
    return LocalObjectStorage(config=config)
