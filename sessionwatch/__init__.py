"""
sessionwatch: HTTP traffic gate, recorder and session segmenter.

Create the tables once (the app lifespan also does this):
    python -m sessionwatch
"""

from sqlalchemy.engine import Engine

from .db import Base, engine as default_engine
from .models import ClientIp, ClientLease, HttpLog  # noqa: F401  (register tables)


def init_db(bind: Engine = None) -> None:
    Base.metadata.create_all(bind=bind or default_engine)
