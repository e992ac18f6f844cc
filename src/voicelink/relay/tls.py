"""
Local TLS material for the relay listener.

Browsers only grant microphone access on secure origins, so local testing from
another device needs HTTPS. Run with:
    voicelink-certs
then start the relay with HTTPS=true.
"""

import logging
import os
import subprocess
import sys
from typing import Dict, Tuple

from ..config import RelayConfig

logger = logging.getLogger(__name__)

SUBJECT = "/C=JP/ST=Tokyo/L=Tokyo/O=Dev/OU=Dev/CN=localhost"


def generate_certificate(
    key_path: str = "localhost-key.pem",
    cert_path: str = "localhost.pem",
    days: int = 365,
    openssl: str = "openssl",
) -> Tuple[str, str]:
    """Create a self-signed localhost key/cert pair with the openssl binary."""
    subprocess.run([openssl, "genrsa", "-out", key_path, "2048"], check=True)
    subprocess.run(
        [
            openssl, "req", "-new", "-x509",
            "-key", key_path,
            "-out", cert_path,
            "-days", str(days),
            "-subj", SUBJECT,
        ],
        check=True,
    )
    return key_path, cert_path


def ssl_options(config: RelayConfig) -> Dict[str, str]:
    """uvicorn keyword arguments for TLS, or {} to serve plain HTTP."""
    if not config.https:
        return {}
    if os.path.exists(config.ssl_key) and os.path.exists(config.ssl_cert):
        return {"ssl_keyfile": config.ssl_key, "ssl_certfile": config.ssl_cert}
    logger.warning("SSL certificates not found. Starting HTTP server.")
    return {}


def main():
    print("Generating self-signed SSL certificates for localhost...")
    try:
        key_path, cert_path = generate_certificate()
    except (OSError, subprocess.CalledProcessError) as e:
        print(f"Failed to generate SSL certificates: {e}", file=sys.stderr)
        print("\nAlternative: You can still use HTTP mode:\n  voicelink-relay", file=sys.stderr)
        sys.exit(1)

    print("SSL certificates generated successfully!")
    print(f"  - {key_path} (private key)")
    print(f"  - {cert_path} (certificate)")
    print("\nTo use HTTPS:\n  HTTPS=true voicelink-relay")


if __name__ == "__main__":
    main()
