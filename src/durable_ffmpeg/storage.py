"""URI-addressed staging and publishing.

Sources: bare paths and ``file://`` (copied), ``http(s)://`` (streamed with
httpx), ``s3://bucket/key`` (MinIO client). Destinations: bare paths and
``file://`` directories, ``s3://bucket/prefix/``.

Failures are classified here and raised as StepFailure:
- missing local source, HTTP 4xx, missing S3 object -> fatal StagingError
- connection errors, timeouts, HTTP 5xx, other S3 errors -> recoverable
Local writes go to ``<name>.partial`` first and are renamed into place, so a
destination never holds a truncated file under its final name.
"""

import logging
import mimetypes
import os
import shutil
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx
from minio import Minio
from minio.error import S3Error

from .errors import ErrorKind, StepFailure
from .models import S3Config, StorageConfig

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"

# S3 error codes that will not change on retry
_FATAL_S3_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "AccessDenied", "InvalidBucketName"})


def _scheme(uri: str) -> str:
    scheme = urlparse(uri).scheme.lower()
    # Windows drive letters parse as one-letter schemes
    return "" if len(scheme) == 1 else scheme


def _local_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if _scheme(uri) == "file":
        return Path(unquote(parsed.path))
    return Path(uri)


def _split_s3(uri: str) -> Tuple[str, str]:
    parsed = urlparse(uri)
    return parsed.netloc, parsed.path.lstrip("/")


def partial_path(path: Path) -> Path:
    return path.with_name(path.name + PARTIAL_SUFFIX)


def remove_tree(path: Path) -> Optional[str]:
    """Delete a working directory.

    Returns:
        None on success (or if it was already gone), otherwise the error text
    """
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("could not remove %s: %s", path, e)
        return str(e)
    return None


def remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove %s: %s", path, e)


class Storage:
    """Fetches sources into working storage and publishes artifacts."""

    def __init__(
        self,
        output_root: str = "outputs",
        http_timeout_s: float = 60.0,
        s3: Optional[S3Config] = None,
        http_client: Optional[httpx.Client] = None,
        s3_client: Optional[Minio] = None,
    ):
        self.output_root = Path(output_root)
        self.http_timeout_s = http_timeout_s
        self.s3_config = s3 or S3Config()
        self._http_client = http_client
        self._s3_client = s3_client

    @classmethod
    def from_config(cls, config: StorageConfig) -> "Storage":
        return cls(
            output_root=config.output_root,
            http_timeout_s=config.http_timeout_s,
            s3=config.s3,
        )

    # --- clients ------------------------------------------------------------

    def _http(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self.http_timeout_s, follow_redirects=True)
        return self._http_client

    def _s3(self, kind: ErrorKind) -> Minio:
        if self._s3_client is None:
            cfg = self.s3_config
            if not cfg.endpoint:
                raise StepFailure(kind, "s3 storage is not configured (no endpoint)", recoverable=False)
            self._s3_client = Minio(
                endpoint=cfg.endpoint,
                access_key=cfg.access_key,
                secret_key=cfg.secret_key,
                secure=cfg.secure,
            )
        return self._s3_client

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    # --- staging ------------------------------------------------------------

    def fetch(self, source: str, dest_dir: Path) -> Path:
        """Materialize ``source`` inside ``dest_dir``.

        Returns:
            Path of the staged file

        Raises:
            StepFailure: kind StagingError, recoverable or fatal
        """
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        scheme = _scheme(source)

        if scheme in ("http", "https"):
            return self._fetch_http(source, dest_dir)
        if scheme == "s3":
            return self._fetch_s3(source, dest_dir)
        return self._fetch_local(_local_path(source), dest_dir)

    def _fetch_local(self, src: Path, dest_dir: Path) -> Path:
        if not src.is_file():
            raise StepFailure(ErrorKind.STAGING, f"source not found: {src}", recoverable=False)

        target = dest_dir / src.name
        partial = partial_path(target)
        try:
            shutil.copyfile(src, partial)
            os.replace(partial, target)
        except PermissionError as e:
            raise StepFailure(ErrorKind.STAGING, f"cannot read source {src}: {e}", recoverable=False) from e
        except OSError as e:
            raise StepFailure(ErrorKind.STAGING, f"copy of {src} failed: {e}", recoverable=True) from e

        logger.info("staged %s -> %s", src, target)
        return target

    def _fetch_http(self, url: str, dest_dir: Path) -> Path:
        name = Path(unquote(urlparse(url).path)).name or "input"
        target = dest_dir / name
        partial = partial_path(target)

        try:
            with self._http().stream("GET", url) as response:
                if response.status_code >= 500:
                    raise StepFailure(
                        ErrorKind.STAGING,
                        f"GET {url} returned {response.status_code}",
                        recoverable=True,
                    )
                if response.status_code >= 400:
                    raise StepFailure(
                        ErrorKind.STAGING,
                        f"GET {url} returned {response.status_code}",
                        recoverable=False,
                    )
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.TransportError as e:
            raise StepFailure(ErrorKind.STAGING, f"GET {url} failed: {e}", recoverable=True) from e

        os.replace(partial, target)
        logger.info("downloaded %s -> %s (%d bytes)", url, target, target.stat().st_size)
        return target

    def _fetch_s3(self, uri: str, dest_dir: Path) -> Path:
        bucket, key = _split_s3(uri)
        target = dest_dir / Path(key).name

        try:
            self._s3(ErrorKind.STAGING).fget_object(
                bucket_name=bucket, object_name=key, file_path=str(target)
            )
        except S3Error as e:
            raise StepFailure(
                ErrorKind.STAGING,
                f"s3 get {uri} failed: {e.code}",
                recoverable=e.code not in _FATAL_S3_CODES,
            ) from e

        logger.info("downloaded %s -> %s", uri, target)
        return target

    # --- publishing ---------------------------------------------------------

    def publish(self, path: Path, destination: Optional[str], name: str) -> str:
        """Copy an artifact to its destination under ``name``.

        Returns:
            The published location (absolute path or s3:// URI)

        Raises:
            StepFailure: kind PublishingError
        """
        destination = destination or str(self.output_root)
        if _scheme(destination) == "s3":
            return self._publish_s3(Path(path), destination, name)
        return self._publish_local(Path(path), _local_path(destination), name)

    def _publish_local(self, path: Path, dest_dir: Path, name: str) -> str:
        final = dest_dir / name
        partial = partial_path(final)
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, partial)
            os.replace(partial, final)
        except OSError as e:
            raise StepFailure(
                ErrorKind.PUBLISHING, f"publish to {dest_dir} failed: {e}", recoverable=True
            ) from e

        location = str(final.resolve())
        logger.info("published %s", location)
        return location

    def _publish_s3(self, path: Path, destination: str, name: str) -> str:
        bucket, prefix = _split_s3(destination)
        object_name = f"{prefix.rstrip('/')}/{name}" if prefix.strip("/") else name
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"

        client = self._s3(ErrorKind.PUBLISHING)
        try:
            if not client.bucket_exists(bucket_name=bucket):
                client.make_bucket(bucket_name=bucket)
            client.fput_object(
                bucket_name=bucket,
                object_name=object_name,
                file_path=str(path),
                content_type=content_type,
            )
        except S3Error as e:
            raise StepFailure(
                ErrorKind.PUBLISHING,
                f"s3 put s3://{bucket}/{object_name} failed: {e.code}",
                recoverable=e.code not in _FATAL_S3_CODES,
            ) from e

        location = f"s3://{bucket}/{object_name}"
        logger.info("published %s", location)
        return location

    def discard_partial(self, destination: Optional[str], name: str) -> None:
        """Remove a temporary publish file left by an interrupted attempt."""
        destination = destination or str(self.output_root)
        if _scheme(destination) == "s3":
            return  # uploads are atomic per object
        remove_file(partial_path(_local_path(destination) / name))
