"""CLI entry point for alcms_ingest.cli module.

Enables execution via: python -m alcms_ingest.cli process
"""

from alcms_ingest.cli.process_uploads import main

if __name__ == "__main__":
    main()
