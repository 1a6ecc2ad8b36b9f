from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from trailguard.schemas import UntrackedScanResult
from trailguard.services.ledger import TrackedResource

CleanupHandler = Callable[[TrackedResource], Any]


class CleanupProvider:
    """Backend that knows how to delete the resources a test run created.

    ``methods`` are registered as ``<name>.<method>`` handlers. Providers that can
    sweep for resources nobody reported override ``cleanup_untracked``.
    """

    name: str = ""
    TYPE_MAPPINGS: Dict[str, str] = {}

    def methods(self) -> Dict[str, CleanupHandler]:
        raise NotImplementedError

    def default_type_mappings(self) -> Dict[str, str]:
        return dict(self.TYPE_MAPPINGS)

    @property
    def supports_untracked(self) -> bool:
        return type(self).cleanup_untracked is not CleanupProvider.cleanup_untracked

    def cleanup_untracked(
        self,
        *,
        test_start_time: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        skip_user: bool = False,
    ) -> UntrackedScanResult:
        raise NotImplementedError(f"Provider '{self.name}' cannot scan for untracked resources")

    def close(self) -> None:
        return None
