"""Error taxonomy shared by the directory, the relays and the gateway.

Every error carries a short ``detail`` that can be sent back to the
originating client as is.
"""


class ChatError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(ChatError):
    # fehlendes/ungültiges Feld, wird vor jedem DB-Zugriff geworfen
    status_code = 400


class ConflictError(ChatError):
    # Name vergeben, schon Mitglied, schon im Anruf
    status_code = 409


class NotFoundError(ChatError):
    status_code = 404


class AuthorizationError(ChatError):
    status_code = 403


class TransientStoreError(ChatError):
    # DB nicht erreichbar oder Retry-Budget aufgebraucht
    status_code = 503
