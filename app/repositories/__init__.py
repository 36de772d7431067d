"""
Data access for the computation engine
"""
from app.repositories.base import Repositories

__all__ = ["Repositories"]
