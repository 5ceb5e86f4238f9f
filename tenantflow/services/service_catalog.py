from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ServiceDefinition:
    key: str
    credential_type: str
    display_name: str
    scopes: tuple[str, ...] = ()

    def is_granted(self, granted_scopes: set[str]) -> bool:
        return bool(self.scopes) and set(self.scopes) <= granted_scopes

    def credential_name(self, user_email: str) -> str:
        return f"{self.display_name} - {user_email}"


GOOGLE_SERVICES: tuple[ServiceDefinition, ...] = (
    ServiceDefinition(
        key="sheets",
        credential_type="googleSheetsOAuth2Api",
        display_name="Google Sheets",
        scopes=("https://www.googleapis.com/auth/spreadsheets",),
    ),
    ServiceDefinition(
        key="calendar",
        credential_type="googleCalendarOAuth2Api",
        display_name="Google Calendar",
        scopes=("https://www.googleapis.com/auth/calendar",),
    ),
    ServiceDefinition(
        key="mail",
        credential_type="gmailOAuth2Api",
        display_name="Gmail",
        scopes=("https://www.googleapis.com/auth/gmail.modify",),
    ),
    ServiceDefinition(
        key="drive",
        credential_type="googleDriveOAuth2Api",
        display_name="Google Drive",
        scopes=("https://www.googleapis.com/auth/drive",),
    ),
)

GENERIC_SERVICE = ServiceDefinition(
    key="generic",
    credential_type="httpBasicAuth",
    display_name="Basic Auth",
)


class ServiceCatalog:
    """Lookup table between service keys and n8n credential types."""

    def __init__(
        self,
        services: tuple[ServiceDefinition, ...] = GOOGLE_SERVICES,
        fallback: ServiceDefinition = GENERIC_SERVICE,
    ):
        self.services = services
        self.fallback = fallback
        self._by_type = {service.credential_type: service for service in (*services, fallback)}

    def for_credential_type(self, credential_type: str) -> ServiceDefinition | None:
        return self._by_type.get(credential_type)

    def granted(self, scope: str) -> list[ServiceDefinition]:
        granted_scopes = set(scope.split())
        return [service for service in self.services if service.is_granted(granted_scopes)]


default_catalog = ServiceCatalog()
