#!/usr/bin/env python3
"""
Shim module delegating to services.collector_service.
Allows `python collector_service.py --project my-project` from the repo root.
"""

import sys

from services.collector_service import main  # type: ignore


if __name__ == '__main__':
    sys.exit(main())
