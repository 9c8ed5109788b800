"""
Error taxonomy for the ingestion pipeline.

Each error carries a short machine-readable code so the HTTP layer can tell
"reconnect required" apart from "try again later" without string matching.
"""


class SubtrackerError(Exception):
    """Base class for pipeline errors."""

    code = "error"

    def __init__(self, msg: str):
        self.msg = msg
        super().__init__(msg)


class ConfigurationError(SubtrackerError):
    """A required secret or setting is missing or invalid. Not retried."""

    code = "configuration_error"


class AuthExpiredError(SubtrackerError):
    """The refresh token was rejected; the user must reconnect the mailbox."""

    code = "reconnect_required"


class MailboxNotConnectedError(SubtrackerError):
    """The user has no connected mailbox credential."""

    code = "mailbox_not_connected"


class NotFoundError(SubtrackerError):
    """A message vanished between listing and fetching, or a record does not exist."""

    code = "not_found"


class ProviderUnavailableError(SubtrackerError):
    """Transient outage of the remote mailbox provider; safe to retry later."""

    code = "try_again_later"


class PersistenceError(SubtrackerError):
    """Database failure during a scan; the watermark was left unmoved."""

    code = "try_again_later"


class MailboxError(SubtrackerError):
    """Provider returned something unusable for a single message."""

    code = "mailbox_error"
