"""
gitops-deployer CLI entry point.
"""

import sys

from gitops_deployer.cli import main

if __name__ == "__main__":
    sys.exit(main())
