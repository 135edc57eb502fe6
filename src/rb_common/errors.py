"""Domain errors shared by the linking, sync and rank services.

Every error carries a stable ``code`` string. Slash commands and HTTP routes
translate codes into user-facing text; the batch sync driver uses them to
classify members as skipped or failed.
"""


class BridgeError(Exception):
    code = "error"
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.context}


# ---------------------------------------------------------------------------
# Input errors: expected, returned to the caller, never logged as failures
# ---------------------------------------------------------------------------


class NotVerifiedError(BridgeError):
    code = "not_verified"
    default_message = "User is not verified."


class NoBindingsError(BridgeError):
    code = "no_bindings"
    default_message = "No role bindings are configured for this server."


class UserNotFoundError(BridgeError):
    code = "user_not_found"
    default_message = "Could not find that Roblox user."


class NoPendingVerificationError(BridgeError):
    code = "no_pending"
    default_message = "No pending verification found or it has expired."


class CodeNotFoundError(BridgeError):
    code = "code_not_found"
    default_message = "The verification code was not found in the Roblox profile."


class AlreadyVerifiedError(BridgeError):
    code = "already_verified"
    default_message = "This Discord account is already verified."


class RobloxAlreadyLinkedError(BridgeError):
    code = "roblox_already_linked"
    default_message = "This Roblox account is already linked to another Discord account."


class BlacklistedError(BridgeError):
    code = "blacklisted"
    default_message = "This account is blacklisted from verification."


class InvalidStateError(BridgeError):
    code = "invalid_state"
    default_message = "Invalid or expired verification session."


class NoGroupError(BridgeError):
    code = "no_group"
    default_message = "No group specified and no default group configured."


class RankNotFoundError(BridgeError):
    code = "rank_not_found"
    default_message = "That rank does not exist in the group."


class OnCooldownError(BridgeError):
    code = "on_cooldown"
    default_message = "Please wait before trying again."

    def __init__(self, retry_after: float, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(
            message or f"Please wait {retry_after:.0f}s before trying again.",
            retry_after=retry_after,
        )


# ---------------------------------------------------------------------------
# External-dependency errors
# ---------------------------------------------------------------------------


class TokenExchangeError(BridgeError):
    code = "token_exchange_failed"
    default_message = "Failed to authenticate with Roblox."


class UserinfoError(BridgeError):
    code = "userinfo_failed"
    default_message = "Failed to fetch the Roblox account info."


class RankChangeError(BridgeError):
    code = "rank_change_failed"
    default_message = "Roblox rejected the rank change."


class SyncFailedError(BridgeError):
    code = "sync_failed"
    default_message = "Role sync failed."
