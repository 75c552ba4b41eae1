# zaptrix_app/config/config.py
# -*- coding: utf-8 -*-
import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
dotenv_path = os.path.join(basedir, '.env')

if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path, override=True)
    logger.debug("Loaded .env from: %s", dotenv_path)
else:
    logger.warning(".env file not found at %s", dotenv_path)


def _env_set(name: str, default: str = '') -> set:
    raw = os.environ.get(name, default)
    return {item.strip() for item in raw.split(',') if item.strip()}


class Config:
    # --- Flask App ---
    SECRET_KEY = os.environ.get('SECRET_KEY', 'default-insecure-zaptrix-key')
    FLASK_ENV = os.environ.get('FLASK_ENV', 'production')
    DEBUG = FLASK_ENV == 'development'
    TESTING = False

    # --- Logging ---
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
    LOG_DIR = os.path.join(basedir, 'logs')
    LOG_FILE = os.path.join(LOG_DIR, 'zaptrix_app.log')

    # --- PostgreSQL Database ---
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    if SQLALCHEMY_DATABASE_URI and SQLALCHEMY_DATABASE_URI.startswith("postgres://"):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = DEBUG

    # --- Redis (cache, dedup markers, locks) ---
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')

    # --- Celery (lowercase keys are read by celery_app) ---
    broker_url = os.environ.get('CELERY_BROKER_URL', REDIS_URL)
    result_backend = os.environ.get('CELERY_RESULT_BACKEND', REDIS_URL)
    task_serializer = 'json'
    accept_content = ['json']
    result_serializer = 'json'
    timezone = 'UTC'
    enable_utc = True

    # --- Queues ---
    QUEUE_RATE_LIMIT = os.environ.get('QUEUE_RATE_LIMIT', '10/s')
    QUEUE_JOB_RETENTION_SECONDS = int(os.environ.get('QUEUE_JOB_RETENTION_SECONDS', 24 * 3600))
    QUEUE_BACKOFF_MAX_SECONDS = int(os.environ.get('QUEUE_BACKOFF_MAX_SECONDS', 60))
    INBOUND_RELAY_CONCURRENCY = int(os.environ.get('INBOUND_RELAY_CONCURRENCY', 10))
    OUTBOUND_RELAY_CONCURRENCY = int(os.environ.get('OUTBOUND_RELAY_CONCURRENCY', 8))
    CHANNEL_SEND_CONCURRENCY = int(os.environ.get('CHANNEL_SEND_CONCURRENCY', 5))
    CRM_SEND_CONCURRENCY = int(os.environ.get('CRM_SEND_CONCURRENCY', 5))

    # --- Cache / Dedup ---
    MAPPING_CACHE_TTL_SECONDS = int(os.environ.get('MAPPING_CACHE_TTL_SECONDS', 3600))
    DEDUP_TTL_SECONDS = int(os.environ.get('DEDUP_TTL_SECONDS', 300))

    # --- Outbound HTTP ---
    HTTP_TIMEOUT_SECONDS = float(os.environ.get('HTTP_TIMEOUT_SECONDS', 30.0))
    # Onboarding holds the lock across a token refresh and three CRM calls.
    MAPPING_CREATE_LOCK_SECONDS = int(os.environ.get('MAPPING_CREATE_LOCK_SECONDS', HTTP_TIMEOUT_SECONDS * 4 + 30))

    # --- WhatsApp Cloud API (inbound channel) ---
    META_VERIFY_TOKEN = os.environ.get('META_VERIFY_TOKEN')
    META_ACCESS_TOKEN = os.environ.get('META_ACCESS_TOKEN')
    META_PHONE_NUMBER_ID = os.environ.get('META_PHONE_NUMBER_ID')
    # Template listing lives on the WhatsApp Business Account; falls back to the phone number id.
    META_BUSINESS_ACCOUNT_ID = os.environ.get('META_BUSINESS_ACCOUNT_ID')
    META_API_VERSION = os.environ.get('META_API_VERSION', 'v18.0')
    META_GRAPH_URL = os.environ.get('META_GRAPH_URL', 'https://graph.facebook.com')

    # --- Bitrix24 (CRM) ---
    BITRIX_PORTAL_URL = (os.environ.get('BITRIX_PORTAL_URL') or '').rstrip('/') or None
    BITRIX_CLIENT_ID = os.environ.get('BITRIX_CLIENT_ID')
    BITRIX_CLIENT_SECRET = os.environ.get('BITRIX_CLIENT_SECRET')
    BITRIX_CONNECTOR = os.environ.get('BITRIX_CONNECTOR', 'custom')
    BITRIX_OPEN_LINE = os.environ.get('BITRIX_OPEN_LINE', 'zaptrix')
    BITRIX_CHAT_GREETING = os.environ.get('BITRIX_CHAT_GREETING', 'Conversation started via WhatsApp')
    # Messages authored by these CRM user ids are never relayed back to the channel.
    BITRIX_SYSTEM_USER_IDS = _env_set('BITRIX_SYSTEM_USER_IDS', '0')
    TOKEN_REFRESH_MARGIN_SECONDS = int(os.environ.get('TOKEN_REFRESH_MARGIN_SECONDS', 300))
    TOKEN_REFRESH_LOCK_SECONDS = int(os.environ.get('TOKEN_REFRESH_LOCK_SECONDS', 45))

    # --- Operator endpoints ---
    INTERNAL_SERVICE_API_KEY = os.environ.get('INTERNAL_SERVICE_API_KEY')
    if not INTERNAL_SERVICE_API_KEY:
        logger.warning("INTERNAL_SERVICE_API_KEY is not set. Portal and message endpoints are unprotected.")


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    REDIS_URL = 'redis://localhost:6379/15'
    broker_url = 'memory://'
    result_backend = 'cache+memory://'
    META_VERIFY_TOKEN = 'verify-me'
    META_ACCESS_TOKEN = 'meta-token'
    META_PHONE_NUMBER_ID = '1234567890'
    BITRIX_PORTAL_URL = 'https://example.bitrix24.com'
    BITRIX_CLIENT_ID = 'local.client'
    BITRIX_CLIENT_SECRET = 'client-secret'
    INTERNAL_SERVICE_API_KEY = 'internal-key'


# --- Config Sanity Check ---
if __name__ != "__main__":
    logger.info("--- Zaptrix Config Initialized ---")
    logger.info("Project Basedir (for .env, logs): %s", basedir)
    logger.info(".env Loaded From: %s", dotenv_path if os.path.exists(dotenv_path) else 'Not Found')
    logger.info("ENV: %s, DEBUG=%s", Config.FLASK_ENV, Config.DEBUG)
    logger.info("DB URI: %s", 'SET' if Config.SQLALCHEMY_DATABASE_URI else 'MISSING')
    logger.info("Redis URL: %s", Config.REDIS_URL)
    logger.info("Bitrix24 Portal: %s", Config.BITRIX_PORTAL_URL or 'MISSING')
    logger.info("Meta Phone Number ID: %s", 'SET' if Config.META_PHONE_NUMBER_ID else 'MISSING')
    logger.info("Meta Access Token: %s", 'SET' if Config.META_ACCESS_TOKEN else 'MISSING')
    logger.info("--------------------")
