"""
Feedback documents and their assets.

Metadata rows live in Postgres (`repository.py`), bodies and attachments live
in object storage (`core/storage.py`); `service.py` keeps the two in step.
"""
