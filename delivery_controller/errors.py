class DeliveryError(Exception):
    """Base class for controller errors"""


class ConfigError(DeliveryError):
    """Invalid strategy or controller parameters, rejected before a rollout starts"""


class NotFoundError(DeliveryError):
    pass


class ConflictError(DeliveryError):
    """A registry write raced with another mutation of the same group"""

    def __init__(self, group_id, expected, actual):
        super().__init__(f"group {group_id} is at revision {actual}, expected {expected}")
        self.group_id = group_id
        self.expected = expected
        self.actual = actual


class ActiveDeploymentError(DeliveryError):
    def __init__(self, group_id, deployment_id):
        super().__init__(f"group {group_id} already has active deployment {deployment_id}")
        self.group_id = group_id
        self.deployment_id = deployment_id


class InvalidTransitionError(DeliveryError):
    pass


class TransientHealthError(DeliveryError):
    """The metrics collaborator could not be reached"""


class RollbackIncompleteError(DeliveryError):
    """Restoration was not confirmed for every instance; safe to retry"""


class IrrecoverableRollbackError(DeliveryError):
    """The last-known-good version can no longer be deployed"""

    def __init__(self, message, deployment_id=None, step=None, snapshot=None):
        super().__init__(message)
        self.deployment_id = deployment_id
        self.step = step
        self.snapshot = snapshot
