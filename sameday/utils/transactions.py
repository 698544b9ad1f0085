from __future__ import annotations

import logging
from contextlib import contextmanager

from sameday.extensions import db

logger = logging.getLogger(__name__)

_DEPTH_KEY = "sameday_uow_depth"
_HOOKS_KEY = "sameday_after_commit"


def on_commit(callback, *args, **kwargs) -> None:
    """Run `callback` once the enclosing unit of work commits.

    Hooks are dropped if the unit of work rolls back. Outside a unit of
    work the callback runs immediately.
    """
    session = db.session
    if not session.info.get(_DEPTH_KEY):
        _run_hook(callback, args, kwargs)
        return
    session.info.setdefault(_HOOKS_KEY, []).append((callback, args, kwargs))


def _run_hook(callback, args, kwargs) -> None:
    try:
        callback(*args, **kwargs)
    except Exception:
        logger.exception("after_commit_hook_failed hook=%s", getattr(callback, "__name__", repr(callback)))


@contextmanager
def unit_of_work():
    """One atomic transaction per engine operation.

    Nested use joins the outermost unit; only the outermost commits or
    rolls back.
    """
    session = db.session
    depth = int(session.info.get(_DEPTH_KEY) or 0)
    session.info[_DEPTH_KEY] = depth + 1
    if depth:
        try:
            yield session
        finally:
            session.info[_DEPTH_KEY] = depth
        return
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        session.info.pop(_HOOKS_KEY, None)
        raise
    finally:
        session.info[_DEPTH_KEY] = 0
    hooks = session.info.pop(_HOOKS_KEY, None) or []
    for callback, args, kwargs in hooks:
        _run_hook(callback, args, kwargs)
