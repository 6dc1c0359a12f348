from .db import (
    Base,
    SessionMaker,
    build_url,
    create_all,
    create_engine,
    dispose_engine,
    insert_ignore,
    make_session_maker,
)  # noqa: F401
from .models import (
    DistributedLock,
    Patient,
    QueueStats,
    QueuedMessage,
    Reminder,
    new_id,
    utcnow,
)  # noqa: F401
from .store import PatientStore  # noqa: F401
