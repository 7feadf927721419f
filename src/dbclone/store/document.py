"""
Flat-document metadata store.

All records live in one JSON document. Writers hold an oslo.concurrency
external lock for the whole read-modify-write of that document (duplicate
check, id allocation, append, replace); readers rely on the document being
replaced atomically and take no lock.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from oslo_concurrency import lockutils

from ..exceptions import (
    DuplicateCloneError,
    DuplicateHostError,
    DuplicateImageError,
    StoreError,
)
from ..logging import logger
from ..models import Clone, CloneFilter, CloneRecord, Host, Image
from .base import MetadataStore, normalize_timestamp

DOCUMENT_NAME = "registry.json"
LOCK_PREFIX = "dbclone-"
COLLECTIONS = ("hosts", "images", "clones")


def _next_id(rows: List[Dict[str, Any]], key: str) -> int:
    return max((row[key] for row in rows), default=0) + 1


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").lower() == (b or "").lower()


class DocumentMetadataStore(MetadataStore):
    """Metadata store kept in ``<path>/registry.json``."""

    backend_name = "file"

    def __init__(self, path: str):
        self.path = os.path.abspath(os.path.expanduser(path))
        self.document_path = os.path.join(self.path, DOCUMENT_NAME)
        try:
            os.makedirs(self.path, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create {self.path}: {e}", self.backend_name)

    def _load(self) -> Dict[str, List[Dict[str, Any]]]:
        try:
            with open(self.document_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            data = {}
        except (OSError, ValueError) as e:
            raise StoreError(
                f"Cannot read {self.document_path}: {e}", self.backend_name
            )

        for name in COLLECTIONS:
            data.setdefault(name, [])
        return data

    def _save(self, data: Dict[str, List[Dict[str, Any]]]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.path, prefix=".registry-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.document_path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreError(
                f"Cannot write {self.document_path}: {e}", self.backend_name
            )

    @contextmanager
    def _locked_document(self) -> Iterator[Dict[str, List[Dict[str, Any]]]]:
        """Hold the document lock while the caller modifies the loaded document.

        The document is written back only if the block exits without error.
        """
        with lockutils.lock(
            DOCUMENT_NAME, lock_file_prefix=LOCK_PREFIX, external=True, lock_path=self.path
        ):
            data = self._load()
            yield data
            self._save(data)

    # Row conversion

    @staticmethod
    def _host(row: Dict[str, Any]) -> Host:
        return Host(row["host_id"], row["host_name"], row.get("ip_address"), row.get("fqdn"))

    @staticmethod
    def _image(row: Dict[str, Any]) -> Image:
        return Image(
            image_id=row["image_id"],
            image_name=row["image_name"],
            image_location=row["image_location"],
            database_name=row["database_name"],
            created_on=normalize_timestamp(datetime.fromisoformat(row["created_on"])),
            size_mb=row.get("size_mb"),
        )

    @staticmethod
    def _clone(row: Dict[str, Any]) -> Clone:
        return Clone(
            clone_id=row["clone_id"],
            image_id=row["image_id"],
            host_id=row["host_id"],
            clone_location=row["clone_location"],
            access_path=row["access_path"],
            sql_instance=row["sql_instance"],
            database_name=row["database_name"],
            is_enabled=row.get("is_enabled", True),
        )

    # Hosts

    def resolve_host_by_name(self, host_name: str) -> Optional[Host]:
        for row in self._load()["hosts"]:
            if _same(row["host_name"], host_name):
                return self._host(row)
        return None

    def create_host(
        self, host_name: str, ip_address: Optional[str], fqdn: Optional[str]
    ) -> Host:
        with self._locked_document() as data:
            if any(_same(row["host_name"], host_name) for row in data["hosts"]):
                raise DuplicateHostError(host_name)
            row = {
                "host_id": _next_id(data["hosts"], "host_id"),
                "host_name": host_name,
                "ip_address": ip_address,
                "fqdn": fqdn,
            }
            data["hosts"].append(row)

        logger.info(f"Registered host {host_name}", host_id=row["host_id"], host=host_name)
        return self._host(row)

    def get_host(self, host_id: int) -> Optional[Host]:
        for row in self._load()["hosts"]:
            if row["host_id"] == host_id:
                return self._host(row)
        return None

    def list_hosts(self) -> List[Host]:
        return [self._host(row) for row in self._load()["hosts"]]

    # Images

    def register_image(
        self,
        image_name: str,
        image_location: str,
        database_name: str,
        created_on: Optional[datetime] = None,
        size_mb: Optional[int] = None,
    ) -> Image:
        with self._locked_document() as data:
            if any(_same(row["image_location"], image_location) for row in data["images"]):
                raise DuplicateImageError(image_location)
            row = {
                "image_id": _next_id(data["images"], "image_id"),
                "image_name": image_name,
                "image_location": image_location,
                "database_name": database_name,
                "size_mb": size_mb,
                "created_on": normalize_timestamp(created_on).isoformat(),
            }
            data["images"].append(row)
        return self._image(row)

    def get_image(self, image_id: int) -> Optional[Image]:
        for row in self._load()["images"]:
            if row["image_id"] == image_id:
                return self._image(row)
        return None

    def find_image_by_location(self, image_location: str) -> Optional[Image]:
        for row in self._load()["images"]:
            if _same(row["image_location"], image_location):
                return self._image(row)
        return None

    def list_images(self, database_name: Optional[str] = None) -> List[Image]:
        return [
            self._image(row)
            for row in self._load()["images"]
            if database_name is None or _same(row["database_name"], database_name)
        ]

    # Clones

    def create_clone(
        self,
        image_id: int,
        host_id: int,
        clone_location: str,
        access_path: str,
        sql_instance: str,
        database_name: str,
        is_enabled: bool = True,
    ) -> Clone:
        with self._locked_document() as data:
            for row in data["clones"]:
                if _same(row["clone_location"], clone_location):
                    raise DuplicateCloneError(f"location '{clone_location}' is registered")
                if _same(row["sql_instance"], sql_instance) and _same(
                    row["database_name"], database_name
                ):
                    raise DuplicateCloneError(
                        f"database '{database_name}' on '{sql_instance}' is registered"
                    )
            row = {
                "clone_id": _next_id(data["clones"], "clone_id"),
                "image_id": image_id,
                "host_id": host_id,
                "clone_location": clone_location,
                "access_path": access_path,
                "sql_instance": sql_instance,
                "database_name": database_name,
                "is_enabled": bool(is_enabled),
            }
            data["clones"].append(row)

        logger.info(
            f"Registered clone {row['clone_id']} for {database_name}",
            clone_id=row["clone_id"],
            database=database_name,
            sql_instance=sql_instance,
        )
        return self._clone(row)

    def list_clones(self, clone_filter: Optional[CloneFilter] = None) -> List[CloneRecord]:
        data = self._load()
        hosts = {row["host_id"]: row for row in data["hosts"]}
        images = {row["image_id"]: row for row in data["images"]}

        records = []
        for row in sorted(data["clones"], key=lambda r: r["clone_id"]):
            image = images.get(row["image_id"], {})
            host = hosts.get(row["host_id"], {})
            record = CloneRecord(
                clone_id=row["clone_id"],
                clone_location=row["clone_location"],
                access_path=row["access_path"],
                sql_instance=row["sql_instance"],
                database_name=row["database_name"],
                is_enabled=row.get("is_enabled", True),
                image_id=row["image_id"],
                image_name=image.get("image_name", ""),
                image_location=image.get("image_location", ""),
                host_name=host.get("host_name", ""),
            )
            if clone_filter is None or clone_filter.matches(record):
                records.append(record)
        return records
