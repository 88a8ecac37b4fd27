from __future__ import annotations

import os

# The api module builds its runtime objects at import time; keep them in memory.
os.environ.setdefault("RELAY_STORE_BACKEND", "inmemory")
os.environ.setdefault("RUNTIME_SECRET_GUARD_MODE", "off")
