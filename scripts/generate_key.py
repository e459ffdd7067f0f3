"""
Print a fresh credential encryption key (64 hex characters) for ENCRYPTION_KEY
"""

import sys
import os

sys.path.append(os.getcwd())

from core.encryption import generate_key


if __name__ == "__main__":
    print(generate_key())
