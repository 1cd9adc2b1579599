"""Lending App - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Lending engine and availability calculation (lending.py)
- Catalog management (catalog.py)
- Authentication and tokens (auth.py)
- Data models (models.py) and error taxonomy (errors.py)
- Database layer (database.py, repositories.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
