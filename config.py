"""
Configuration settings for the academic records application.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Database settings
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///./academic_records.db')
SQL_ECHO = os.getenv('SQL_ECHO', 'False').lower() == 'true'

# Listing settings
PAGE_SIZE = int(os.getenv('PAGE_SIZE', 10))

# Logging settings
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FILE = os.getenv('LOG_FILE', 'api.log')

# Bearer tokens accepted by the API; empty disables the check
API_TOKENS = [token.strip() for token in os.getenv('API_TOKENS', '').split(',') if token.strip()]

# Server settings
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', 8000))
