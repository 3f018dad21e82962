"""
TikTok account system backend.

Role-scoped management of TikTok accounts organised into groups, daily
metric snapshot ingestion and aggregated analytics.
"""

__version__ = "1.0.0"
