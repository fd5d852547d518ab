import os
from slowapi import Limiter
from slowapi.util import get_remote_address

RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_ADMIN = os.getenv("RATE_LIMIT_ADMIN", "30/minute")
RATE_LIMIT_HEAVY = os.getenv("RATE_LIMIT_HEAVY", "10/minute")
# Batch control shares one limit per client; status polling uses the default.
RATE_LIMIT_BATCH_CONTROL = os.getenv("RATE_LIMIT_BATCH_CONTROL", "20/minute")

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
)
