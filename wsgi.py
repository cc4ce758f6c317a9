"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi run
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflow --rig-id 2 --assign toolpusher=john-toolpusher
    flask --app wsgi backfill-routing --apply
"""

from app import create_app

app = create_app()
