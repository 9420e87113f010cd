"""Database models for the local registry store.

Each mirrored version is kept twice: the full record in ``module`` and the
abbreviated projection in ``module_abbreviated``. Dist-tags, unpublish
records, users and sync logs have their own tables.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Module(Base):
    """A full version record of a package."""

    __tablename__ = "module"
    __table_args__ = (UniqueConstraint("name", "version", name="uq_module_name_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(214), nullable=False, index=True)
    version = Column(String(256), nullable=False)
    author = Column(String(100), nullable=True)  # actor that synced or published it
    description = Column(Text, nullable=True)
    package = Column(JSON, nullable=False, default=dict)

    dist_tarball = Column(String(2048), nullable=True)
    dist_shasum = Column(String(100), nullable=True)
    dist_size = Column(BigInteger, nullable=True)

    publish_time = Column(BigInteger, nullable=True)  # epoch milliseconds
    gmt_create = Column(DateTime, default=_utcnow)
    gmt_modified = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<Module {self.name}@{self.version}>"


class ModuleAbbreviated(Base):
    """The abbreviated projection of a version record."""

    __tablename__ = "module_abbreviated"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_module_abbreviated_name_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(214), nullable=False, index=True)
    version = Column(String(256), nullable=False)
    package = Column(JSON, nullable=False, default=dict)
    publish_time = Column(BigInteger, nullable=True)
    gmt_create = Column(DateTime, default=_utcnow)
    gmt_modified = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<ModuleAbbreviated {self.name}@{self.version}>"


class ModuleTag(Base):
    """A dist-tag pointing at a version."""

    __tablename__ = "tag"
    __table_args__ = (UniqueConstraint("name", "tag", name="uq_tag_name_tag"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(214), nullable=False, index=True)
    tag = Column(String(214), nullable=False)
    version = Column(String(256), nullable=False)
    gmt_create = Column(DateTime, default=_utcnow)
    gmt_modified = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<ModuleTag {self.name}@{self.tag} -> {self.version}>"


class ModuleUnpublished(Base):
    """Unpublish event recorded for a package."""

    __tablename__ = "module_unpublished"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(214), nullable=False, unique=True)
    package = Column(JSON, nullable=False, default=dict)
    gmt_create = Column(DateTime, default=_utcnow)
    gmt_modified = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class User(Base):
    """A registry account.

    Accounts registered directly against this registry carry a salt and
    password hash. Mirrored accounts (``npm_user``) only shadow upstream and
    have no credential material.
    """

    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    email = Column(String(400), nullable=True)
    salt = Column(String(100), nullable=True)
    password_sha = Column(String(100), nullable=True)
    ip = Column(String(64), nullable=True)
    npm_user = Column(Boolean, default=False, nullable=False)
    json = Column(JSON, nullable=True)
    gmt_create = Column(DateTime, default=_utcnow)
    gmt_modified = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<User {self.name}>"


class ModuleLog(Base):
    """Trace of one sync run."""

    __tablename__ = "module_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(214), nullable=False, index=True)
    username = Column(String(100), nullable=False)
    log = Column(Text, nullable=False, default="")
    gmt_create = Column(DateTime, default=_utcnow)
    gmt_modified = Column(DateTime, default=_utcnow, onupdate=_utcnow)
