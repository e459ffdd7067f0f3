"""
Encrypt a credential record (JSON file or stdin) into a token for job payloads.

Usage:
    ENCRYPTION_KEY=... python scripts/encrypt_credentials.py creds.json
    cat creds.json | python scripts/encrypt_credentials.py -
"""

import argparse
import json
import logging
import sys
import os

sys.path.append(os.getcwd())

from core.config import settings
from core.encryption import CredentialCodec
from core.exceptions import CredentialDecryptError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Encrypt a credential record")
    parser.add_argument("path", help="JSON file holding the record, or - for stdin")
    args = parser.parse_args(argv)

    try:
        if args.path == "-":
            record = json.load(sys.stdin)
        else:
            with open(args.path) as f:
                record = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read credential record: {e}")
        return 1

    if not isinstance(record, dict):
        logger.error("Credential record must be a JSON object")
        return 1

    try:
        print(CredentialCodec(settings.ENCRYPTION_KEY).encrypt(record))
    except CredentialDecryptError as e:
        logger.error(e.user_message())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
