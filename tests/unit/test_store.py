"""
Tests for the metadata store backends.

Behaviour tests run against both the relational and the flat-document backend
through the parametrized ``store`` fixture; schema and file-level tests target
one backend.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query

from dbclone.config import AppConfig
from dbclone.exceptions import (
    DuplicateCloneError,
    DuplicateHostError,
    DuplicateImageError,
    NoImageFoundError,
)
from dbclone.models import CloneFilter
from dbclone.store import DocumentMetadataStore, SqlMetadataStore, get_store
from dbclone.store.sql import CloneRow, HostRow, ImageRow

T0 = datetime(2024, 1, 1, 12, 0, 0)


def add_image(store, location="D:\\images\\DB1_2024.vhdx", database="DB1", offset=0):
    name = location.rsplit("\\", 1)[-1]
    return store.register_image(name, location, database, T0 + timedelta(seconds=offset))


def add_clone(store, image, host, instance="SQL01", database="DB1_2024", location=None):
    location = location or f"C:\\clone\\{database}.vhdx"
    return store.create_clone(
        image_id=image.image_id,
        host_id=host.host_id,
        clone_location=location,
        access_path=f"C:\\clone\\{database}_abcde",
        sql_instance=instance,
        database_name=database,
    )


class TestHosts:
    def test_resolve_unknown_host(self, store):
        assert store.resolve_host_by_name("HOSTA") is None

    def test_host_ids_strictly_increasing(self, store):
        ids = [store.create_host(f"HOST{i}", None, None).host_id for i in range(5)]
        assert ids == [1, 2, 3, 4, 5]

    def test_resolve_is_case_insensitive(self, store):
        created = store.create_host("HOSTA", "10.0.0.1", "hosta.corp.local")
        resolved = store.resolve_host_by_name("hosta")
        assert resolved == created
        assert resolved.ip_address == "10.0.0.1"
        assert resolved.fqdn == "hosta.corp.local"

    def test_duplicate_host(self, store):
        store.create_host("HOSTA", None, None)
        with pytest.raises(DuplicateHostError) as exc_info:
            store.create_host("hosta", None, None)
        assert exc_info.value.error_code == 1201
        assert len(store.list_hosts()) == 1

    def test_get_host(self, store):
        host = store.create_host("HOSTA", None, None)
        assert store.get_host(host.host_id) == host
        assert store.get_host(99) is None


class TestImages:
    def test_latest_image_picks_newest(self, store):
        add_image(store, "D:\\images\\DB1_t2.vhdx", offset=200)
        newest = add_image(store, "D:\\images\\DB1_t3.vhdx", offset=300)
        add_image(store, "D:\\images\\DB1_t1.vhdx", offset=100)
        add_image(store, "D:\\images\\DB2_t9.vhdx", database="DB2", offset=900)

        assert store.latest_image_for_database("DB1") == newest

    def test_latest_image_absent(self, store):
        add_image(store, database="DB1")
        assert store.latest_image_for_database("DB9") is None

    def test_find_image_by_location(self, store):
        image = add_image(store)
        assert store.find_image_by_location("d:\\IMAGES\\db1_2024.vhdx") == image
        assert store.find_image_by_location("D:\\images\\other.vhdx") is None

    def test_require_image_raises_not_found(self, store):
        with pytest.raises(NoImageFoundError):
            store.require_image("D:\\images\\missing.vhdx")

    def test_duplicate_image_location(self, store):
        add_image(store)
        with pytest.raises(DuplicateImageError):
            add_image(store, offset=50)
        with pytest.raises(DuplicateImageError):
            add_image(store, "d:\\IMAGES\\db1_2024.VHDX", offset=60)
        assert len(store.list_images()) == 1

    def test_timezone_aware_timestamps_stored_naive_utc(self, store):
        add_image(store, "D:\\images\\DB1_t1.vhdx", offset=100)
        aware = store.register_image(
            "DB1_tz.vhdx",
            "D:\\images\\DB1_tz.vhdx",
            "DB1",
            datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=1))),
        )

        assert aware.created_on == datetime(2024, 1, 1, 13, 0)
        assert aware.created_on.tzinfo is None
        assert store.latest_image_for_database("DB1") == aware
        assert store.get_image(aware.image_id).created_on == datetime(2024, 1, 1, 13, 0)

    def test_list_and_get_images(self, store):
        first = add_image(store, "D:\\images\\a.vhdx", database="DB1")
        second = add_image(store, "D:\\images\\b.vhdx", database="DB2", offset=10)

        assert store.list_images() == [first, second]
        assert store.list_images("db2") == [second]
        assert store.get_image(first.image_id) == first
        assert store.get_image(42) is None
        assert first.created_on == T0


class TestClones:
    def test_create_and_list_denormalized(self, store):
        image = add_image(store)
        host = store.create_host("HOSTA", None, None)
        clone = add_clone(store, image, host)

        assert clone.clone_id == 1
        assert clone.is_enabled is True

        [record] = store.list_clones()
        assert record.clone_id == 1
        assert record.image_id == image.image_id
        assert record.image_name == "DB1_2024.vhdx"
        assert record.image_location == "D:\\images\\DB1_2024.vhdx"
        assert record.host_name == "HOSTA"
        assert store.get_clone_record(1) == record
        assert store.get_clone_record(2) is None

    def test_retry_observes_duplicate(self, store):
        image = add_image(store)
        host = store.create_host("HOSTA", None, None)
        add_clone(store, image, host)

        with pytest.raises(DuplicateCloneError):
            add_clone(store, image, host)
        with pytest.raises(DuplicateCloneError):
            add_clone(store, image, host, location="E:\\other\\DB1_2024.vhdx")
        assert len(store.list_clones()) == 1

    def test_same_location_is_duplicate(self, store):
        image = add_image(store)
        host = store.create_host("HOSTA", None, None)
        add_clone(store, image, host, database="A", location="C:\\clone\\A.vhdx")

        with pytest.raises(DuplicateCloneError):
            add_clone(store, image, host, database="B", location="C:\\clone\\A.vhdx")

    def test_same_database_on_other_instance(self, store):
        image = add_image(store)
        host = store.create_host("HOSTA", None, None)
        add_clone(store, image, host, instance="SQL01", location="C:\\a\\DB.vhdx")
        clone = add_clone(store, image, host, instance="SQL02", location="C:\\b\\DB.vhdx")
        assert clone.clone_id == 2

    def test_concurrent_create_clone(self, store):
        image = add_image(store)
        host = store.create_host("HOSTA", None, None)
        barrier = threading.Barrier(2)
        ids = []
        errors = []

        def worker(n):
            barrier.wait()
            try:
                clone = add_clone(store, image, host, database=f"DB_{n}")
                ids.append(clone.clone_id)
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(ids) == [1, 2]

    def test_list_clones_filters(self, store):
        image = add_image(store)
        other_image = add_image(store, "D:\\images\\DB2.vhdx", database="DB2", offset=5)
        host_a = store.create_host("HOSTA", None, None)
        host_b = store.create_host("HOSTB", None, None)
        add_clone(store, image, host_a, instance="HOSTA", database="one")
        add_clone(store, other_image, host_b, instance="HOSTB", database="two")
        store.create_clone(
            image.image_id, host_b.host_id, "C:\\clone\\three.vhdx", "C:\\clone\\three_x",
            "HOSTB", "three", is_enabled=False,
        )

        assert [r.database_name for r in store.list_clones(CloneFilter(host_name="hostb"))] == [
            "two",
            "three",
        ]
        assert [r.clone_id for r in store.list_clones(CloneFilter(image_id=image.image_id))] == [
            1,
            3,
        ]
        assert [r.database_name for r in store.list_clones(CloneFilter(is_enabled=False))] == [
            "three"
        ]
        assert [
            r.database_name
            for r in store.list_clones(CloneFilter(sql_instance="hosta", database_name="ONE"))
        ] == ["one"]
        assert store.list_clones(CloneFilter(host_name="HOSTC")) == []


class TestBackendSelection:
    def test_file_backend_is_default(self, tmp_path):
        store = get_store(AppConfig(store_path=str(tmp_path / "reg")))
        assert isinstance(store, DocumentMetadataStore)
        assert store.document_path.endswith("registry.json")

    def test_sql_backend(self, tmp_path):
        store = get_store(AppConfig(store_type="sql", store_url=f"sqlite:///{tmp_path}/r.db"))
        try:
            assert isinstance(store, SqlMetadataStore)
        finally:
            store.close()


class TestRelationalSchema:
    @pytest.fixture
    def sql_store(self, tmp_path):
        store = SqlMetadataStore(f"sqlite:///{tmp_path / 'schema.db'}")
        yield store
        store.close()

    def test_host_names_unique_ignoring_case(self, sql_store):
        sql_store.create_host("HOSTA", None, None)
        with pytest.raises(IntegrityError):
            with sql_store.session() as db:
                db.add(HostRow(host_name="hosta"))

    def test_image_locations_unique_ignoring_case(self, sql_store):
        add_image(sql_store)
        with pytest.raises(IntegrityError):
            with sql_store.session() as db:
                db.add(
                    ImageRow(
                        image_name="DB1_2024.vhdx",
                        image_location="d:\\IMAGES\\db1_2024.vhdx",
                        database_name="DB1",
                        created_on=T0,
                    )
                )

    @pytest.mark.parametrize(
        "location, instance, database",
        [
            ("c:\\CLONE\\db1_2024.VHDX", "SQL02", "Other"),
            ("C:\\clone\\other.vhdx", "sql01", "db1_2024"),
        ],
    )
    def test_clone_keys_unique_ignoring_case(self, sql_store, location, instance, database):
        image = add_image(sql_store)
        host = sql_store.create_host("HOSTA", None, None)
        add_clone(sql_store, image, host)

        with pytest.raises(IntegrityError):
            with sql_store.session() as db:
                db.add(
                    CloneRow(
                        image_id=image.image_id,
                        host_id=host.host_id,
                        clone_location=location,
                        sql_instance=instance,
                        database_name=database,
                        access_path="C:\\clone\\x_abcde",
                    )
                )

    def test_lost_race_maps_to_duplicate(self, sql_store, monkeypatch):
        image = add_image(sql_store)
        host = sql_store.create_host("HOSTA", None, None)
        add_clone(sql_store, image, host)

        # Pre-checks see nothing, as when the other writer commits after them
        monkeypatch.setattr(Query, "first", lambda self: None)

        with pytest.raises(DuplicateHostError):
            sql_store.create_host("hosta", None, None)
        with pytest.raises(DuplicateImageError):
            add_image(sql_store, "D:\\IMAGES\\DB1_2024.VHDX")
        with pytest.raises(DuplicateCloneError):
            add_clone(
                sql_store, image, host, "sql01", "db1_2024", "C:\\clone\\other.vhdx"
            )


class TestDocumentFile:
    def test_document_survives_reopen(self, tmp_path):
        first = DocumentMetadataStore(str(tmp_path))
        first.create_host("HOSTA", None, None)
        add_image(first)

        second = DocumentMetadataStore(str(tmp_path))
        assert second.resolve_host_by_name("HOSTA").host_id == 1
        assert second.list_images()[0].created_on == T0

    def test_failed_write_leaves_document_unchanged(self, tmp_path):
        store = DocumentMetadataStore(str(tmp_path))
        store.create_host("HOSTA", None, None)
        before = (tmp_path / "registry.json").read_text()

        with pytest.raises(DuplicateHostError):
            store.create_host("HOSTA", None, None)
        assert (tmp_path / "registry.json").read_text() == before
