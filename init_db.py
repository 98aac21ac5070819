#!/usr/bin/env python3
"""
Database initialization script
Creates the review sync tables and runs manual migrations
"""
import logging
import os
import sys

from sqlalchemy import text

from database import init_db, SessionLocal

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("init_db")


def main():
    """Initialize database tables"""
    try:
        logger.info("Initializing database...")
        logger.info(f"Database URL set: {bool(os.getenv('DATABASE_URL'))}")

        init_db()

        logger.info("Tables ready: channel_credentials, review_sync_jobs, reviews")

        # Test connection
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        logger.info("Database connection verified")

        return 0

    except Exception:
        logger.exception("Error initializing database")
        return 1


if __name__ == "__main__":
    sys.exit(main())
