import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "site-relay")

# Upstream identity
ORIGIN = os.environ.get("ORIGIN", "https://example.wixsite.com").rstrip("/")
SITE_PATH = os.environ.get("SITE_PATH", "/mysite").rstrip("/")

# Public identity
PUBLIC_HOST = os.environ.get("PUBLIC_HOST", "https://www.example.com").rstrip("/")
PUBLIC_ORIGIN = os.environ.get("PUBLIC_ORIGIN", PUBLIC_HOST).rstrip("/")
RELAY_PREFIX = os.environ.get("RELAY_PREFIX", "/__x").rstrip("/")

# Branding / SEO
FAVICON_URL = os.environ.get("FAVICON_URL", "/assets/logo.png")
OG_IMAGE_URL = os.environ.get("OG_IMAGE_URL", FAVICON_URL)
LOGO_ALT_NAMES = [
    n.strip()
    for n in os.environ.get("LOGO_ALT_NAMES", "logo.png,logo1.png").split(",")
    if n.strip()
]
SITE_TITLE = os.environ.get("SITE_TITLE", "My Proxy Site")
SITE_DESCRIPTION = os.environ.get(
    "SITE_DESCRIPTION", "Proxying a Wix site through a custom domain"
)
ASSETS_DIR = os.environ.get(
    "ASSETS_DIR", os.path.join(os.path.dirname(os.path.dirname(__file__)), "assets")
)

# Upstream fetching
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))
FETCH_ATTEMPTS = int(os.environ.get("FETCH_ATTEMPTS", "3"))
FETCH_BACKOFF_SECONDS = float(os.environ.get("FETCH_BACKOFF_SECONDS", "0.4"))

# Hosts
EXTRA_ALLOWED_HOSTS = [
    h.strip().lower()
    for h in os.environ.get("EXTRA_ALLOWED_HOSTS", "").split(",")
    if h.strip()
]
API_DOMAINS = [
    d.strip().lower()
    for d in os.environ.get("API_DOMAINS", "wix.com,wixsite.com").split(",")
    if d.strip()
]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
