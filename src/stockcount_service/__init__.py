"""Remote stock count service backed by SQLAlchemy."""
