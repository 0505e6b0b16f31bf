from app.core.config import settings
from app.core.database import get_db, Base, get_db_session, ping_database
from app.core.security import create_merchant_token, decode_merchant_token
