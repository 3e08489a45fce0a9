"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py            # upgrade to head
  python migrate.py <revision> # upgrade to a specific revision
"""

import logging
import os
import sys

from alembic import command
from alembic.config import Config

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def alembic_config():
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    return cfg


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    # The migration owns DDL; the app must not race it.
    os.environ['RUN_STARTUP_DDL'] = '0'
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    import config

    config.get_database_url()
    revision = argv[0] if argv else 'head'
    try:
        print(f"Applying database migrations (target: {revision})...")
        command.upgrade(alembic_config(), revision)
        print("Migrations completed successfully.")
    except Exception as e:
        logging.exception("Migration failed")
        print(f"Migration failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
