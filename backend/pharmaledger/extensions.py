# Overview: Flask extension instances shared by the ledger services (store handle and migrations).

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()
