"""
Viewer session for Fleet Bridge.

The dashboard decides what a viewer sees from two values stored at login:
the role and the project name. The bridge keeps one such viewer and
filters toasts and the notification feed for it.
"""

import threading
from typing import Optional

from fleetbridge.config import CONFIG, log

RESTRICTED_ROLE = "user"


class ViewerSession:
    """Holds the current viewer's role and project name."""

    def __init__(self, role: Optional[str] = None, project_name: Optional[str] = None):
        self._lock = threading.Lock()
        self.role: Optional[str] = role if role is not None else CONFIG.get("viewer_role")
        self.project_name: Optional[str] = (
            project_name if project_name is not None else CONFIG.get("viewer_project")
        )
        if self.role:
            log.info("Viewer session: role=%s project=%s", self.role, self.project_name or "<none>")

    def login(self, role: str = RESTRICTED_ROLE, project_name: str = ""):
        with self._lock:
            self.role = role
            self.project_name = project_name
        log.info("Viewer logged in: role=%s project=%s", role, project_name or "<none>")

    def logout(self):
        with self._lock:
            self.role = None
            self.project_name = None
        log.info("Viewer logged out")

    def current(self) -> tuple:
        """Return ``(role, project_name)`` as one consistent pair."""
        with self._lock:
            return self.role, self.project_name

    @property
    def is_restricted(self) -> bool:
        return self.current()[0] == RESTRICTED_ROLE

    def as_dict(self) -> dict:
        role, project = self.current()
        return {"role": role, "projectName": project, "restricted": role == RESTRICTED_ROLE}
