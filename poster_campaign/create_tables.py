# poster_campaign/create_tables.py

import os
import sys
# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from poster_campaign.config import settings
from poster_campaign.db import Base, init_db
from poster_campaign.services.storage import storage_service

print("Creating database tables...")
init_db()
print("Tables created successfully: " + ", ".join(sorted(Base.metadata.tables)))
print(f"Database: {settings.DATABASE_URL}")

storage_service.ensure_directories()
print(f"Storage directories ready under {storage_service.base_path}")
