# env vars + constants
import os

NODE_ID = os.getenv("NODE_ID", "nodeX")
PORT = int(os.getenv("PORT", "8000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | console

TX_MAX_ATTEMPTS = int(os.getenv("TX_MAX_ATTEMPTS", "5"))
STREAM_KEEPALIVE = float(os.getenv("STREAM_KEEPALIVE", "15.0"))

MOBILE_PATTERN = r"[6-9][0-9]{9}"
MIN_OPTIONS = 2
