"""
Run the sync API with uvicorn
"""

import os
import sys

sys.path.append(os.getcwd())

import uvicorn

from core.config import settings


def main():
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
