import logging
import threading
from typing import Optional, Union

from .models import AdminPolicy

logger = logging.getLogger(__name__)

POLICY_SETTING_KEY = "auto_renew_default_behavior"


class AdminPolicyStore:
    """
    Holds the global negative-balance policy.

    Every read fetches the stored setting, so workers sharing one database
    see each other's changes. Reads take no lock; writes are serialized and
    written through to storage.
    """

    def __init__(self, storage, default: AdminPolicy = AdminPolicy.OVERRIDE):
        self._storage = storage
        self._default = AdminPolicy(default)
        self._lock = threading.Lock()
        # (raw stored value, parsed policy), replaced as one tuple
        self._cached: tuple[Optional[str], AdminPolicy] = (None, self._default)

    def _parse(self, stored: Optional[str]) -> AdminPolicy:
        if stored is None:
            return self._default
        try:
            return AdminPolicy(stored)
        except ValueError:
            logger.warning(f"Ignoring unknown admin policy {stored!r}, using {self._default.value}")
            return self._default

    def get(self) -> AdminPolicy:
        stored = self._storage.get_setting(POLICY_SETTING_KEY)
        cached_raw, cached_policy = self._cached
        if stored == cached_raw:
            return cached_policy
        policy = self._parse(stored)
        self._cached = (stored, policy)
        return policy

    def set(self, policy: Union[AdminPolicy, str]) -> AdminPolicy:
        policy = AdminPolicy(policy)
        with self._lock:
            previous = self.get()
            self._storage.set_setting(POLICY_SETTING_KEY, policy.value)
            self._cached = (policy.value, policy)
        if previous != policy:
            logger.info(f"Admin policy changed from {previous.value} to {policy.value}")
        return policy
