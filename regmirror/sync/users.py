"""Mirror upstream accounts into local shadow records."""

from dataclasses import dataclass

from ..common.logger import get_logger
from ..registry.service import UserService
from .upstream import UpstreamRegistry

logger = get_logger("user_sync")


@dataclass
class UserSyncResult:
    """Outcome of reconciling one account."""

    name: str
    synced: bool = False  # shadow record written from upstream
    deleted: bool = False  # stale shadow record removed
    retained: bool = False  # absent upstream but registered locally


class UserReconciler:
    """Keeps mirrored accounts in step with upstream.

    Accounts registered directly against this registry carry credential
    material and are never deleted here, whatever upstream says.
    """

    def __init__(self, upstream: UpstreamRegistry, user_service: UserService):
        self.upstream = upstream
        self.user_service = user_service

    def reconcile_user(self, name: str) -> UserSyncResult:
        """Upsert or delete the local shadow record of ``name``.

        Raises:
            TransientFetchError: If upstream could not be reached
        """
        result = UserSyncResult(name=name)

        upstream_user = self.upstream.get_user(name)
        if upstream_user is not None:
            self.user_service.save_npm_user(upstream_user)
            result.synced = True
            logger.info(f"[user:{name}] synced from upstream")
            return result

        local_user = self.user_service.find_by_name(name)
        if local_user is None:
            logger.info(f"[user:{name}] not found upstream or locally")
            return result

        if local_user.has_credentials:
            result.retained = True
            logger.info(f"[user:{name}] not found upstream, keeping locally registered account")
            return result

        result.deleted = self.user_service.delete_by_name(name)
        logger.info(f"[user:{name}] not found upstream, deleted mirrored account")
        return result
