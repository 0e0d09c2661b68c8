import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("BOOKSHARE_DATABASE_URL", "sqlite:///./bookshare.db")

LOAN_PERIOD_DAYS = int(os.getenv("BOOKSHARE_LOAN_PERIOD_DAYS", "7"))
DEFAULT_BORROW_LIMIT = int(os.getenv("BOOKSHARE_DEFAULT_BORROW_LIMIT", "3"))
TRUSTED_REPUTATION = float(os.getenv("BOOKSHARE_TRUSTED_REPUTATION", "4.5"))

LOG_LEVEL = os.getenv("BOOKSHARE_LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("BOOKSHARE_PORT", "8000"))
