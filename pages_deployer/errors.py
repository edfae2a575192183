class DeployerError(Exception):
    """Base class for errors raised by the deployer."""


class TaskValidationError(DeployerError):
    """A task request is malformed or cannot be resolved to a repository."""


class AuthError(DeployerError):
    """The shared secret on a task request does not match."""


class GitHubError(DeployerError):
    """GitHub answered successfully but not with what we need."""


class RetryError(DeployerError):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
