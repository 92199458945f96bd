"""CLI entry point for genledger.cli module.

Enables execution via: python -m genledger.cli
"""

from genledger.cli.reconcile import main

if __name__ == "__main__":
    main()
