"""Services over the local registry store.

The services hand out plain dataclass rows instead of ORM objects so callers
on different threads never share session state.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from ..common.logger import get_logger
from .models import Module, ModuleAbbreviated, ModuleLog, ModuleTag, ModuleUnpublished, User

logger = get_logger("registry_service")


@dataclass
class ModuleRow:
    """A stored version record."""

    name: str
    version: str
    package: Dict[str, Any]
    publish_time: Optional[int] = None
    author: Optional[str] = None


@dataclass
class TagRow:
    """A stored dist-tag."""

    name: str
    tag: str
    version: str


@dataclass
class UserRow:
    """A stored registry account."""

    name: str
    email: Optional[str] = None
    salt: Optional[str] = None
    password_sha: Optional[str] = None
    ip: Optional[str] = None
    npm_user: bool = False
    json: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        """True for accounts registered directly against this registry."""
        return bool(self.password_sha or self.salt)


class PackageService:
    """Versions, abbreviated versions, dist-tags and unpublish records."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # Full version records

    def list_modules_by_name(self, name: str) -> List[ModuleRow]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Module).where(Module.name == name).order_by(Module.id)
            ).all()
            return [self._module_row(row) for row in rows]

    def show_package(self, name: str, version: str) -> Optional[ModuleRow]:
        with self._session_factory() as session:
            row = session.scalars(
                select(Module).where(Module.name == name, Module.version == version)
            ).first()
            return self._module_row(row) if row else None

    def save_module(
        self,
        name: str,
        version: str,
        package: Dict[str, Any],
        publish_time: Optional[int] = None,
        author: Optional[str] = None,
    ) -> None:
        """Insert or replace a full version record."""
        dist = package.get("dist") or {}
        with self._session_factory.begin() as session:
            row = session.scalars(
                select(Module).where(Module.name == name, Module.version == version)
            ).first()
            if row is None:
                row = Module(name=name, version=version)
                session.add(row)
            row.package = copy.deepcopy(package)
            row.description = package.get("description")
            row.publish_time = publish_time
            row.author = author
            row.dist_tarball = dist.get("tarball")
            row.dist_shasum = dist.get("shasum")
            row.dist_size = dist.get("size")

    def remove_modules(self, name: str, versions: Optional[Iterable[str]] = None) -> int:
        """Remove full and abbreviated records of ``name``.

        Args:
            name: Package name
            versions: Versions to remove; all versions when None

        Returns:
            Number of full records removed
        """
        with self._session_factory.begin() as session:
            module_stmt = delete(Module).where(Module.name == name)
            abbreviated_stmt = delete(ModuleAbbreviated).where(ModuleAbbreviated.name == name)
            if versions is not None:
                versions = list(versions)
                module_stmt = module_stmt.where(Module.version.in_(versions))
                abbreviated_stmt = abbreviated_stmt.where(ModuleAbbreviated.version.in_(versions))
            result = session.execute(module_stmt)
            session.execute(abbreviated_stmt)
            return result.rowcount or 0

    # Abbreviated version records

    def list_module_abbreviateds_by_name(self, name: str) -> List[ModuleRow]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ModuleAbbreviated)
                .where(ModuleAbbreviated.name == name)
                .order_by(ModuleAbbreviated.id)
            ).all()
            return [
                ModuleRow(
                    name=row.name,
                    version=row.version,
                    package=copy.deepcopy(row.package or {}),
                    publish_time=row.publish_time,
                )
                for row in rows
            ]

    def save_module_abbreviated(
        self,
        name: str,
        version: str,
        package: Dict[str, Any],
        publish_time: Optional[int] = None,
    ) -> None:
        """Insert or replace an abbreviated version record."""
        with self._session_factory.begin() as session:
            row = session.scalars(
                select(ModuleAbbreviated).where(
                    ModuleAbbreviated.name == name, ModuleAbbreviated.version == version
                )
            ).first()
            if row is None:
                row = ModuleAbbreviated(name=name, version=version)
                session.add(row)
            row.package = copy.deepcopy(package)
            row.publish_time = publish_time

    # Dist-tags

    def list_module_tags(self, name: str) -> List[TagRow]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(ModuleTag).where(ModuleTag.name == name).order_by(ModuleTag.tag)
            ).all()
            return [TagRow(name=row.name, tag=row.tag, version=row.version) for row in rows]

    def add_module_tag(self, name: str, tag: str, version: str) -> None:
        with self._session_factory.begin() as session:
            row = session.scalars(
                select(ModuleTag).where(ModuleTag.name == name, ModuleTag.tag == tag)
            ).first()
            if row is None:
                session.add(ModuleTag(name=name, tag=tag, version=version))
            elif row.version != version:
                row.version = version

    def remove_module_tags(self, name: str, tags: Optional[Iterable[str]] = None) -> int:
        """Remove dist-tags of ``name``; all of them when ``tags`` is None."""
        with self._session_factory.begin() as session:
            stmt = delete(ModuleTag).where(ModuleTag.name == name)
            if tags is not None:
                stmt = stmt.where(ModuleTag.tag.in_(list(tags)))
            return session.execute(stmt).rowcount or 0

    # Unpublish records

    def save_unpublished_module(self, name: str, info: Dict[str, Any]) -> None:
        with self._session_factory.begin() as session:
            row = session.scalars(
                select(ModuleUnpublished).where(ModuleUnpublished.name == name)
            ).first()
            if row is None:
                row = ModuleUnpublished(name=name)
                session.add(row)
            row.package = copy.deepcopy(info)

    def show_unpublished_module(self, name: str) -> Optional[Dict[str, Any]]:
        with self._session_factory() as session:
            row = session.scalars(
                select(ModuleUnpublished).where(ModuleUnpublished.name == name)
            ).first()
            return copy.deepcopy(row.package) if row else None

    def remove_unpublished_module(self, name: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(delete(ModuleUnpublished).where(ModuleUnpublished.name == name))

    @staticmethod
    def _module_row(row: Module) -> ModuleRow:
        return ModuleRow(
            name=row.name,
            version=row.version,
            package=copy.deepcopy(row.package or {}),
            publish_time=row.publish_time,
            author=row.author,
        )


class UserService:
    """Registry accounts, both registered and mirrored."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def find_by_name(self, name: str) -> Optional[UserRow]:
        with self._session_factory() as session:
            row = session.scalars(select(User).where(User.name == name)).first()
            if row is None:
                return None
            return UserRow(
                name=row.name,
                email=row.email,
                salt=row.salt,
                password_sha=row.password_sha,
                ip=row.ip,
                npm_user=bool(row.npm_user),
                json=copy.deepcopy(row.json or {}),
            )

    def add(
        self,
        name: str,
        email: str,
        password_sha: str,
        salt: str,
        ip: Optional[str] = None,
    ) -> None:
        """Register a local account with credential material."""
        with self._session_factory.begin() as session:
            session.add(
                User(
                    name=name,
                    email=email,
                    password_sha=password_sha,
                    salt=salt,
                    ip=ip,
                    npm_user=False,
                    json={},
                )
            )

    def save_npm_user(self, user: Dict[str, Any]) -> None:
        """Insert or refresh the shadow record of an upstream account.

        Credential material of an existing local account is left untouched.
        """
        name = user["name"]
        with self._session_factory.begin() as session:
            row = session.scalars(select(User).where(User.name == name)).first()
            if row is None:
                row = User(name=name, npm_user=True)
                session.add(row)
            row.email = user.get("email") or row.email
            row.json = copy.deepcopy(user)
            if not (row.password_sha or row.salt):
                row.npm_user = True

    def delete_by_name(self, name: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(delete(User).where(User.name == name))
            return bool(result.rowcount)


class LogService:
    """Per-run sync logs, addressable by id."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, name: str, username: str) -> int:
        with self._session_factory.begin() as session:
            row = ModuleLog(name=name, username=username, log="")
            session.add(row)
            session.flush()
            return row.id

    def append(self, log_id: int, line: str) -> None:
        with self._session_factory.begin() as session:
            row = session.get(ModuleLog, log_id)
            if row is None:
                logger.warning(f"Sync log {log_id} not found, dropping line")
                return
            row.log = f"{row.log}\n{line}" if row.log else line

    def get(self, log_id: int) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(ModuleLog, log_id)
            return row.log if row else None
