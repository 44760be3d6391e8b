"""
Session Persistence

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- session.py: The `user_sessions` table and its upsert statement
- store.py: The `Session` value, the `SessionStore` contract and its backends
- health.py: Health monitoring gauge
"""
