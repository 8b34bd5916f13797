"""
Configuration module for the Lead Import Worker
Centralizes all environment variables and settings
"""
import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'clinic_leads')

# Environment
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'development')  # 'development' or 'production'
IS_PRODUCTION = ENVIRONMENT == 'production'

# Lead import
IMPORT_BATCH_SIZE = int(os.environ.get('IMPORT_BATCH_SIZE', '500'))
CHECKPOINT_EVERY_BATCHES = int(os.environ.get('CHECKPOINT_EVERY_BATCHES', '5'))
YIELD_EVERY_BATCHES = int(os.environ.get('YIELD_EVERY_BATCHES', '3'))
SEGMENT_FLUSH_THRESHOLD = int(os.environ.get('SEGMENT_FLUSH_THRESHOLD', '1000'))
CHECKPOINT_TTL_SECONDS = int(os.environ.get('CHECKPOINT_TTL_SECONDS', str(7 * 24 * 60 * 60)))

# Job queue
QUEUE_POLL_SECONDS = int(os.environ.get('QUEUE_POLL_SECONDS', '10'))
ADMISSION_INTERVAL_SECONDS = float(os.environ.get('ADMISSION_INTERVAL_SECONDS', '0.5'))
MAX_JOB_ATTEMPTS = int(os.environ.get('MAX_JOB_ATTEMPTS', '3'))
ORPHAN_TIMEOUT_SECONDS = int(os.environ.get('ORPHAN_TIMEOUT_SECONDS', '300'))  # no heartbeat for 5 minutes
COMPLETED_JOB_TTL_SECONDS = 24 * 60 * 60
FAILED_JOB_TTL_SECONDS = 7 * 24 * 60 * 60

# WhatsApp Business (Graph API)
GRAPH_API_BASE = os.environ.get('GRAPH_API_BASE', 'https://graph.facebook.com/v19.0')
GRAPH_API_TIMEOUT = float(os.environ.get('GRAPH_API_TIMEOUT', '30'))
TEMPLATE_PAGE_SIZE = int(os.environ.get('TEMPLATE_PAGE_SIZE', '100'))
