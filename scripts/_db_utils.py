from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.mailroom.db import create_engine_for, make_sessionmaker


def create_script_engine(db_url: str):
    return create_engine_for(db_url)


@contextmanager
def script_session(db_url: str):
    """Standalone session (no Flask app) that commits on success; the engine is disposed on exit."""
    engine = create_script_engine(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
