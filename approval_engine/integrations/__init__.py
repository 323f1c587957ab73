"""approval_engine.integrations — External collaborator adapters.

The engine consults two collaborators it does not own:
  role_directory.RoleDirectory — who holds which role
  notifier.Notifier            — who hears about transitions

One instance of each, plus the completion-handler registry, is attached per
Flask app under ``app.extensions["approval_engine"]`` by
``init_integrations`` and can be swapped at runtime (tests do this) with
``set_role_directory`` / ``set_notifier``.
"""

from flask import current_app

from approval_engine.integrations.notifier import CompletionHandlers, LoggingNotifier, Notifier
from approval_engine.integrations.role_directory import DatabaseRoleDirectory, RoleDirectory

_EXT_KEY = "approval_engine"


def init_integrations(app, role_directory: RoleDirectory | None = None, notifier: Notifier | None = None):
    """Attach collaborators to *app*; defaults are the DB directory and log notifier."""
    app.extensions[_EXT_KEY] = {
        "role_directory": role_directory or DatabaseRoleDirectory(),
        "notifier": notifier or LoggingNotifier(),
        "completion_handlers": CompletionHandlers(),
    }


def _state(app=None) -> dict:
    app = app or current_app
    return app.extensions[_EXT_KEY]


def get_role_directory(app=None) -> RoleDirectory:
    return _state(app)["role_directory"]


def get_notifier(app=None) -> Notifier:
    return _state(app)["notifier"]


def get_completion_handlers(app=None) -> CompletionHandlers:
    return _state(app)["completion_handlers"]


def set_role_directory(app, role_directory: RoleDirectory) -> None:
    _state(app)["role_directory"] = role_directory


def set_notifier(app, notifier: Notifier) -> None:
    _state(app)["notifier"] = notifier


def register_completion_handler(request_type: str, handler, app=None) -> None:
    """Call *handler* whenever an instance of *request_type* reaches a terminal state."""
    get_completion_handlers(app).register(request_type, handler)


def clear_completion_handlers(app=None) -> None:
    get_completion_handlers(app).clear()
