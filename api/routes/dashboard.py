"""
api/routes/dashboard.py -- User-facing dashboard endpoints.

Routes:
  GET /                       -- filtered dashboard {title, categories, user}
  GET /api/health             -- {categories} filtered for the user, with status
  GET /api/dependencies       -- dependency graph of the visible static apps
  GET /api/user/preferences   -- the caller's stored preferences object
  PUT /api/user/preferences   -- replace it

GET / is the only route that redirects instead of answering 401:
  setup not done         -> /setup
  no identity, login UI  -> login_redirect_target() (/login or /auth/oidc)
  no identity otherwise  -> 401

Handlers are plain defs: resolving an API key runs bcrypt.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import RedirectResponse

from api.routes.common import error
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import AuthenticatedUser
from auth.settings import login_redirect_target
from core.access import filter_categories, visible_dashboard
from core.models import App, Category

router = APIRouter()


def app_to_dict(app: App) -> dict:
    data = {
        "name": app.name,
        "url": app.url,
        "icon": app.icon,
        "description": app.description,
        "groups": list(app.groups),
        "status": app.status,
    }
    if app.depends_on:
        data["depends_on"] = list(app.depends_on)
    return data


def categories_to_list(categories: list[Category]) -> list[dict]:
    return [{"name": c.name, "apps": [app_to_dict(a) for a in c.apps]} for c in categories]


def _visible(request: Request, user: AuthenticatedUser) -> tuple[str, list[Category]]:
    state = request.app.state
    config = state.catalog.snapshot()
    categories = visible_dashboard(
        config.categories,
        state.discovery.raw_entries(),
        user.groups,
        user.is_admin,
        state.probe.status,
    )
    return config.title, categories


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@router.get("/")
def dashboard(request: Request):
    settings_manager = request.app.state.settings_manager
    if settings_manager.needs_setup():
        return RedirectResponse("/setup", status_code=302)

    user = try_get_current_user(request)
    if user is None:
        target = login_redirect_target(settings_manager.runtime())
        if target:
            return RedirectResponse(target, status_code=302)
        raise error(401, "unauthorized", "Authentication required.")

    title, categories = _visible(request, user)
    return {"title": title, "categories": categories_to_list(categories), "user": user.to_dict()}


@router.get("/api/health")
def api_health(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> dict:
    _title, categories = _visible(request, user)
    return {"categories": categories_to_list(categories)}


@router.get("/api/dependencies")
def dependencies(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> list[dict]:
    """One node per visible static app; depended_by is derived from depends_on."""
    config = request.app.state.catalog.snapshot()
    probe = request.app.state.probe
    visible = filter_categories(config.categories, user.groups, user.is_admin, probe.status)

    nodes: dict[str, dict] = {}
    for cat in visible:
        for app in cat.apps:
            nodes.setdefault(
                app.name,
                {
                    "name": app.name,
                    "icon": app.icon,
                    "status": app.status,
                    "depends_on": list(app.depends_on),
                    "depended_by": [],
                },
            )
    for node in nodes.values():
        for dep in node["depends_on"]:
            if dep in nodes:
                nodes[dep]["depended_by"].append(node["name"])
    return list(nodes.values())


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


@router.get("/api/user/preferences")
def get_preferences(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> dict:
    return request.app.state.store.get_preferences(user.username)


@router.put("/api/user/preferences")
def put_preferences(
    request: Request,
    preferences: dict = Body(...),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
    request.app.state.store.save_preferences(user.username, preferences, user_id=user.user_id)
    return {"status": "saved"}
