from dataclasses import dataclass

from jobboard.core.config import Settings


@dataclass(slots=True)
class Identity:
    subject: str
    email: str | None = None

    def keys(self) -> set[str]:
        values = {self.subject.strip().lower()}
        if self.email:
            values.add(self.email.strip().lower())
        return {value for value in values if value}


def is_privileged(identity: Identity | None, settings: Settings) -> bool:
    """Return whether the identity may use support and maintenance operations.

    Privilege comes only from the configured ``privileged_identities`` list,
    matched case-insensitively against the identity's subject or email.
    """
    if identity is None:
        return False
    allowed = {entry.strip().lower() for entry in settings.privileged_identities if entry and entry.strip()}
    return bool(allowed & identity.keys())
