import sys

from database import Base, engine, SessionLocal
from services.etl import import_goodreads_csv

path = sys.argv[1] if len(sys.argv) > 1 else "data/goodreads_library_export.csv"
user_id = sys.argv[2] if len(sys.argv) > 2 else "me"

Base.metadata.create_all(bind=engine)
with open(path, "rb") as f:
    db = SessionLocal()
    try:
        print(import_goodreads_csv(f.read(), db, user_id=user_id))
    finally:
        db.close()
