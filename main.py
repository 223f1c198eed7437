#!/usr/bin/env python3

import sys

from ai_usage_cost.cli import main

if __name__ == "__main__":
    sys.exit(main())
