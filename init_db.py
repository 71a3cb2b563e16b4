"""
Initialize the database with the elevation tables
"""
from server import app
from models import db, TempAccessGrant, ScheduledJob, ElevationAuditLog


def init_database():
    """Create all database tables"""
    with app.app_context():
        db.create_all()
        print("✅ Database tables created successfully!")

        for model in (TempAccessGrant, ScheduledJob, ElevationAuditLog):
            print(f"   - {model.__tablename__}: {model.query.count()} rows")


if __name__ == '__main__':
    init_database()
