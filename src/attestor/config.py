import os
from dotenv import load_dotenv

load_dotenv()

DATA_DIR = os.getenv("ATTESTOR_DATA_DIR", "var/attestor")

# Collaborator endpoints
CA_URL = os.getenv("ATTESTOR_CA_URL", "https://fulcio.sigstore.dev")
LOG_URL = os.getenv("ATTESTOR_LOG_URL", "https://rekor.sigstore.dev")
REGISTRY_URL = os.getenv("ATTESTOR_REGISTRY_URL", "")

# Trust material: JSON file with CA certificates and pinned log keys (PEM)
TRUSTED_ROOT = os.getenv("ATTESTOR_TRUSTED_ROOT", "config/trusted_root.json")
ALLOWED_ISSUERS = [
    i.strip()
    for i in os.getenv(
        "ATTESTOR_ALLOWED_ISSUERS",
        "https://token.actions.githubusercontent.com,https://accounts.google.com",
    ).split(",")
    if i.strip()
]

# Seconds
MAX_CERT_VALIDITY = int(os.getenv("ATTESTOR_MAX_CERT_VALIDITY", "1200"))
CHECKPOINT_MAX_AGE = int(os.getenv("ATTESTOR_CHECKPOINT_MAX_AGE", "86400"))
CLOCK_SKEW = int(os.getenv("ATTESTOR_CLOCK_SKEW", "60"))
HTTP_TIMEOUT = float(os.getenv("ATTESTOR_HTTP_TIMEOUT", "10.0"))

# Bounded exponential backoff for CAUnavailable / LogUnavailable
RETRY_ATTEMPTS = int(os.getenv("ATTESTOR_RETRY_ATTEMPTS", "4"))
RETRY_BASE = float(os.getenv("ATTESTOR_RETRY_BASE", "0.5"))
RETRY_MAX_DELAY = float(os.getenv("ATTESTOR_RETRY_MAX_DELAY", "8.0"))
RETRY_DEADLINE = float(os.getenv("ATTESTOR_RETRY_DEADLINE", "60.0"))

SBOM_STRICT = os.getenv("ATTESTOR_SBOM_STRICT", "false").lower() == "true"
