"""
modelmcp - expose an annotated data model over the Model Context Protocol

Entry points:
- modelmcp.main:app / create_app() - FastAPI application
- python -m modelmcp - run with uvicorn
"""

__version__ = "1.0.0"
