"""Registry of in-flight crawl runs, so they can be aborted by id or on shutdown."""

from threading import Lock

import logfire

from pagecrawl.services.run_controller import CrawlRunController


class RegistryClosedError(Exception):
    """Raised when registering a run after shutdown has begun."""

    pass


class RunRegistry:
    """Thread-safe map of run id to its controller."""

    def __init__(self):
        self._runs: dict[str, CrawlRunController] = {}
        self._lock = Lock()
        self._accepting = True

    def register(self, controller: CrawlRunController) -> None:
        """Track a run.

        Raises:
            RegistryClosedError: If the service is shutting down.
            ValueError: If a run with the same id is already active.
        """
        with self._lock:
            if not self._accepting:
                raise RegistryClosedError("Service is shutting down")
            if controller.run_id in self._runs:
                raise ValueError(f"Run {controller.run_id} is already active")
            self._runs[controller.run_id] = controller

    def unregister(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def abort(self, run_id: str, reason: str = "Aborted by operator") -> bool:
        """Abort one run.

        Returns:
            True if the run was active, False if unknown.
        """
        with self._lock:
            controller = self._runs.get(run_id)
        if controller is None:
            return False
        logfire.info("Aborting run", run_id=run_id, reason=reason)
        controller.abort(reason)
        return True

    def abort_all(self, reason: str) -> int:
        """Abort every active run and stop accepting new ones.

        Returns:
            Number of runs signalled.
        """
        with self._lock:
            self._accepting = False
            controllers = list(self._runs.values())
        for controller in controllers:
            controller.abort(reason)
        if controllers:
            logfire.warn("Aborted active runs", count=len(controllers), reason=reason)
        return len(controllers)

    @property
    def active_run_ids(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    @property
    def accepting(self) -> bool:
        return self._accepting


# Global instance
_registry: RunRegistry | None = None


def get_run_registry() -> RunRegistry:
    """Get the global run registry instance."""
    global _registry
    if _registry is None:
        _registry = RunRegistry()
    return _registry


def reset_run_registry() -> None:
    """Reset the global run registry (primarily for testing)."""
    global _registry
    _registry = None
