"""Google provider adapters (OAuth, Calendar v3, Drive v3)."""

from matterflow.providers.google_auth import GoogleClients, open_google_clients
from matterflow.providers.google_calendar import EventPage, GoogleCalendarClient
from matterflow.providers.google_drive import DriveFile, GoogleDriveClient

__all__ = [
    "DriveFile",
    "EventPage",
    "GoogleCalendarClient",
    "GoogleClients",
    "GoogleDriveClient",
    "open_google_clients",
]
