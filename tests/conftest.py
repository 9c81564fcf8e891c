import os
import tempfile
from pathlib import Path

os.environ.setdefault("USE_SNMP_STUB", "1")
os.environ.setdefault("ARCHIVE_HISTORY", "0")
os.environ.setdefault("AUTOSTART_POLLING", "0")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'occupancy-test.db'}")
os.environ.setdefault("SITES_CONFIG_PATH", str(Path(tempfile.gettempdir()) / "occupancy-no-such-sites.json"))
