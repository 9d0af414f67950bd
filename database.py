"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the P2P trade settlement core.
"""

import logging
from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import QueuePool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

# Sync engine: schema management and health checks only
engine = create_engine(
    Config.DATABASE_URL,
    poolclass=QueuePool,
    pool_size=Config.DB_POOL_SIZE,
    max_overflow=Config.DB_MAX_OVERFLOW,
    pool_pre_ping=True,    # Validate connections before use
    pool_recycle=3600,     # Recycle connections every hour
    pool_timeout=30,
    echo=False,
    connect_args={
        "connect_timeout": 10,
        "application_name": Config.DB_APPLICATION_NAME,
    }
)

# asyncpg uses 'ssl' instead of 'sslmode'
async_database_url = Config.DATABASE_URL.replace('postgresql://', 'postgresql+asyncpg://')
async_database_url = async_database_url.replace('sslmode=require', 'ssl=require')
async_database_url = async_database_url.replace('sslmode=prefer', 'ssl=prefer')
async_database_url = async_database_url.replace('sslmode=disable', 'ssl=disable')

async_engine = create_async_engine(
    async_database_url,
    pool_size=Config.DB_POOL_SIZE,
    max_overflow=Config.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=3600,
    pool_timeout=30,
    echo=False,
    connect_args={
        "server_settings": {
            "application_name": f"{Config.DB_APPLICATION_NAME}_async",
        },
        "timeout": 10,
        "command_timeout": 30,
    }
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False  # CRITICAL: rows are read after commit by callers and the verifier
)


def create_tables():
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=engine, checkfirst=True)

        from sqlalchemy import inspect
        existing_tables = inspect(engine).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection():
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
