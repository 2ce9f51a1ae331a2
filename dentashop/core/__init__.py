from dentashop.core.config import settings
from dentashop.core.database import get_db, Base, get_db_session
