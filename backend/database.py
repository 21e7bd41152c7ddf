from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from config.env import MONGO_URI

load_dotenv()

if not MONGO_URI:
    raise RuntimeError("MONGODB_URI not set")

client = AsyncIOMotorClient(MONGO_URI)
db = client.get_default_database("seller_ledger")

def get_db():
    return db
