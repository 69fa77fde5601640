import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

os.environ.setdefault(
    "EVENTS_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="rallypoint-tests-"), "events.sqlite3"),
)
