"""Domain errors raised by the services and translated to HTTP by the routers."""


class BranchChatError(Exception):
    pass


class ConversationNotFound(BranchChatError):
    pass


class MessageNotFound(BranchChatError):
    pass


class ParentNotFound(BranchChatError):
    """The requested parent does not exist inside the target conversation."""


class AttachmentNotFound(BranchChatError):
    pass


class InvalidAttachment(BranchChatError):
    pass


class GenerationConflict(BranchChatError):
    """A live generation already exists for the requested key."""

    def __init__(self, key):
        super().__init__(f"A generation is already running for message {key}")
        self.key = key


class ProviderFailure(BranchChatError):
    pass


class AttachmentReadFailure(BranchChatError):
    pass


class TreeInvariantViolation(BranchChatError):
    """Internal consistency error; the operation is rejected, never auto-repaired."""
