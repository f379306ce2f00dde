from fastapi import Depends
from services.cache import get_cache_client
from auth.security import get_current_client
from data.database import get_db

# --- DEPENDENCY INJECTION SETUP ---
# Shared by every router; tests swap the targets through app.dependency_overrides
CLIENT_AUTH = Depends(get_current_client)
DB_DEPENDENCY = Depends(get_db)
CACHE_CLIENT = Depends(get_cache_client)
