"""Internal constants for the Felicity Solar cloud API."""

from __future__ import annotations

from pathlib import Path

API_BASE = "https://shine-api.felicitysolar.com"

LOGIN_PATH = "/userlogin"
DEVICE_LIST_PATH = "/device/list_device_all_type"
DEVICE_SNAPSHOT_PATH = "/device/get_device_snapshot"

LOGIN_VERSION = "1.0"

# Tokens come back as "Bearer_<jwt>" and are sent back verbatim.
TOKEN_PREFIX = "Bearer_"

RSA_PUBLIC_KEY_B64 = (
    "MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEAnAJE68pjWZmtSg6ZJs9FZugJXC6bBSlu"
    "TW6mJttOLOaljrdErVnM5DNN+YFzpB9pAysTErjY1bnSVuEwQSwptnqUji7Ch2qMj2n+0eCp8p6v"
    "tSh7/tFr2ul8nDRtkoswLANAIwtUk/G85ipMpmY1W642LImnEJmGkkddlbjbjxJTZWR5hc/d9cPW"
    "b+AR77LxFFrMik3c+44v1kQlIPFP6EjIbOvt/Lv7fHWD9JI/YzN4y1gK7C/VQdNGuikQyNg+5W3r"
    "g9ecYf9I5uLAQwY/hxeI3lbNsErebqKe2EbJ8AwcNIC0lDBz53Sq0ML89QapEuy3fB+upuctxLUL"
    "VDCbNwIDAQAB"
)

# Only battery packs are queried and cached.
BATTERY_DEVICE_TYPE = "BP"
BATTERY_PRODUCT_TYPE = "LITHIUM_BATTERY_PACK"

DEVICE_LIST_PAGE_SIZE = 10

TOKEN_DIR = Path.home() / ".config" / "felicity"
TOKEN_FILE = TOKEN_DIR / "token.json"

DEFAULT_POLL_INTERVAL = 30.0  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds, per HTTP call
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000

APP_HEADERS: dict[str, str] = {
    "accept": "application/json, text/plain, */*",
    "content-type": "application/json",
}
