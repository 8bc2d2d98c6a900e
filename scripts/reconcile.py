# periodic full recompute of derived reading state; safe to run any time
import logging

import config
from database import Base, engine, SessionLocal
from services.reconcile import reconcile_all

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO),
                    format="[%(asctime)s] %(levelname)s %(name)s - %(message)s")

Base.metadata.create_all(bind=engine)
db = SessionLocal()
try:
    print(reconcile_all(db))
finally:
    db.close()
