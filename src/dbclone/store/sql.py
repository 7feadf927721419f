"""
Relational metadata store backed by SQLAlchemy.

Identifiers come from the database's integer primary keys; unique constraints
turn a lost insert race into a Duplicate* error instead of a second record.
Names and locations compare case-insensitively, so each unique value is
backed by a lower-cased *_key column carrying the constraint.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from ..exceptions import (
    DuplicateCloneError,
    DuplicateHostError,
    DuplicateImageError,
    StoreError,
)
from ..logging import logger
from ..models import Clone, CloneFilter, CloneRecord, Host, Image
from .base import MetadataStore, normalize_timestamp

Base = declarative_base()


def lowercase_of(column: str):
    """Column default holding the lower-cased value of another column."""

    def default(context):
        return context.get_current_parameters()[column].lower()

    return default


class HostRow(Base):
    __tablename__ = "hosts"
    id = Column(Integer, primary_key=True)
    host_name = Column(String(255), nullable=False)
    name_key = Column(
        String(255), unique=True, nullable=False, default=lowercase_of("host_name")
    )
    ip_address = Column(String(64))
    fqdn = Column(String(255))

    clones = relationship("CloneRow", back_populates="host")

    def to_model(self) -> Host:
        return Host(self.id, self.host_name, self.ip_address, self.fqdn)


class ImageRow(Base):
    __tablename__ = "images"
    id = Column(Integer, primary_key=True)
    image_name = Column(String(255), nullable=False)
    image_location = Column(String(1024), nullable=False)
    location_key = Column(
        String(1024), unique=True, nullable=False, default=lowercase_of("image_location")
    )
    database_name = Column(String(128), nullable=False, index=True)
    size_mb = Column(Integer)
    created_on = Column(DateTime, nullable=False, default=datetime.now)

    clones = relationship("CloneRow", back_populates="image")

    def to_model(self) -> Image:
        return Image(
            image_id=self.id,
            image_name=self.image_name,
            image_location=self.image_location,
            database_name=self.database_name,
            created_on=self.created_on,
            size_mb=self.size_mb,
        )


class CloneRow(Base):
    __tablename__ = "clones"
    __table_args__ = (
        UniqueConstraint("instance_key", "database_key", name="uq_clone_database"),
    )
    id = Column(Integer, primary_key=True)
    image_id = Column(Integer, ForeignKey("images.id"), nullable=False)
    host_id = Column(Integer, ForeignKey("hosts.id"), nullable=False)
    clone_location = Column(String(1024), nullable=False)
    location_key = Column(
        String(1024), unique=True, nullable=False, default=lowercase_of("clone_location")
    )
    access_path = Column(String(1024), nullable=False)
    sql_instance = Column(String(255), nullable=False)
    instance_key = Column(String(255), nullable=False, default=lowercase_of("sql_instance"))
    database_name = Column(String(128), nullable=False)
    database_key = Column(String(128), nullable=False, default=lowercase_of("database_name"))
    is_enabled = Column(Boolean, nullable=False, default=True)

    image = relationship("ImageRow", back_populates="clones")
    host = relationship("HostRow", back_populates="clones")

    def to_model(self) -> Clone:
        return Clone(
            clone_id=self.id,
            image_id=self.image_id,
            host_id=self.host_id,
            clone_location=self.clone_location,
            access_path=self.access_path,
            sql_instance=self.sql_instance,
            database_name=self.database_name,
            is_enabled=self.is_enabled,
        )

    def to_record(self) -> CloneRecord:
        return CloneRecord(
            clone_id=self.id,
            clone_location=self.clone_location,
            access_path=self.access_path,
            sql_instance=self.sql_instance,
            database_name=self.database_name,
            is_enabled=self.is_enabled,
            image_id=self.image_id,
            image_name=self.image.image_name,
            image_location=self.image.image_location,
            host_name=self.host.host_name,
        )


class SqlMetadataStore(MetadataStore):
    """Metadata store in a relational database (SQLite, SQL Server, ...)."""

    backend_name = "sql"

    def __init__(self, url: str, create_schema: bool = True, **engine_kwargs):
        connect_args = {}
        if url.startswith("sqlite"):
            # Sessions may be used from executor threads
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(url, connect_args=connect_args, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        if create_schema:
            Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One transaction per block; rolled back on any error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Metadata store error: {e}", backend=self.backend_name)
            raise StoreError(str(e), self.backend_name) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Hosts

    def resolve_host_by_name(self, host_name: str) -> Optional[Host]:
        with self.session() as db:
            row = (
                db.query(HostRow)
                .filter(HostRow.name_key == host_name.lower())
                .first()
            )
            return row.to_model() if row else None

    def create_host(
        self, host_name: str, ip_address: Optional[str], fqdn: Optional[str]
    ) -> Host:
        try:
            with self.session() as db:
                exists = (
                    db.query(HostRow.id)
                    .filter(HostRow.name_key == host_name.lower())
                    .first()
                )
                if exists:
                    raise DuplicateHostError(host_name)
                row = HostRow(host_name=host_name, ip_address=ip_address, fqdn=fqdn)
                db.add(row)
                db.flush()
                host = row.to_model()
        except IntegrityError as e:
            raise DuplicateHostError(host_name) from e

        logger.info(f"Registered host {host_name}", host_id=host.host_id, host=host_name)
        return host

    def get_host(self, host_id: int) -> Optional[Host]:
        with self.session() as db:
            row = db.get(HostRow, host_id)
            return row.to_model() if row else None

    def list_hosts(self) -> List[Host]:
        with self.session() as db:
            return [row.to_model() for row in db.query(HostRow).order_by(HostRow.id)]

    # Images

    def register_image(
        self,
        image_name: str,
        image_location: str,
        database_name: str,
        created_on: Optional[datetime] = None,
        size_mb: Optional[int] = None,
    ) -> Image:
        try:
            with self.session() as db:
                if (
                    db.query(ImageRow.id)
                    .filter(ImageRow.location_key == image_location.lower())
                    .first()
                ):
                    raise DuplicateImageError(image_location)
                row = ImageRow(
                    image_name=image_name,
                    image_location=image_location,
                    database_name=database_name,
                    created_on=normalize_timestamp(created_on),
                    size_mb=size_mb,
                )
                db.add(row)
                db.flush()
                return row.to_model()
        except IntegrityError as e:
            raise DuplicateImageError(image_location) from e

    def get_image(self, image_id: int) -> Optional[Image]:
        with self.session() as db:
            row = db.get(ImageRow, image_id)
            return row.to_model() if row else None

    def find_image_by_location(self, image_location: str) -> Optional[Image]:
        with self.session() as db:
            row = (
                db.query(ImageRow)
                .filter(ImageRow.location_key == image_location.lower())
                .first()
            )
            return row.to_model() if row else None

    def list_images(self, database_name: Optional[str] = None) -> List[Image]:
        with self.session() as db:
            query = db.query(ImageRow)
            if database_name is not None:
                query = query.filter(
                    func.lower(ImageRow.database_name) == database_name.lower()
                )
            return [row.to_model() for row in query.order_by(ImageRow.id)]

    def latest_image_for_database(self, database_name: str) -> Optional[Image]:
        with self.session() as db:
            row = (
                db.query(ImageRow)
                .filter(func.lower(ImageRow.database_name) == database_name.lower())
                .order_by(ImageRow.created_on.desc(), ImageRow.id.desc())
                .first()
            )
            return row.to_model() if row else None

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
        try:
            with self.session() as db:
                if (
                    db.query(CloneRow.id)
                    .filter(CloneRow.location_key == clone_location.lower())
                    .first()
                ):
                    raise DuplicateCloneError(f"location '{clone_location}' is registered")
                if (
                    db.query(CloneRow.id)
                    .filter(
                        CloneRow.instance_key == sql_instance.lower(),
                        CloneRow.database_key == database_name.lower(),
                    )
                    .first()
                ):
                    raise DuplicateCloneError(
                        f"database '{database_name}' on '{sql_instance}' is registered"
                    )
                row = CloneRow(
                    image_id=image_id,
                    host_id=host_id,
                    clone_location=clone_location,
                    access_path=access_path,
                    sql_instance=sql_instance,
                    database_name=database_name,
                    is_enabled=is_enabled,
                )
                db.add(row)
                db.flush()
                clone = row.to_model()
        except IntegrityError as e:
            raise DuplicateCloneError(str(e.orig)) from e

        logger.info(
            f"Registered clone {clone.clone_id} for {database_name}",
            clone_id=clone.clone_id,
            database=database_name,
            sql_instance=sql_instance,
        )
        return clone

    def list_clones(self, clone_filter: Optional[CloneFilter] = None) -> List[CloneRecord]:
        with self.session() as db:
            query = db.query(CloneRow).join(CloneRow.image).join(CloneRow.host)
            if clone_filter is not None:
                if clone_filter.host_name is not None:
                    query = query.filter(
                        HostRow.name_key == clone_filter.host_name.lower()
                    )
                if clone_filter.database_name is not None:
                    query = query.filter(
                        func.lower(CloneRow.database_name)
                        == clone_filter.database_name.lower()
                    )
                if clone_filter.image_id is not None:
                    query = query.filter(CloneRow.image_id == clone_filter.image_id)
                if clone_filter.sql_instance is not None:
                    query = query.filter(
                        func.lower(CloneRow.sql_instance)
                        == clone_filter.sql_instance.lower()
                    )
                if clone_filter.is_enabled is not None:
                    query = query.filter(CloneRow.is_enabled == clone_filter.is_enabled)
            return [row.to_record() for row in query.order_by(CloneRow.id)]

    def close(self) -> None:
        self.engine.dispose()
