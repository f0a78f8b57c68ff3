"""Custom exceptions for kubeconverge."""


class ConvergeError(Exception):
    """Base exception for all kubeconverge errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ValidationError(ConvergeError):
    """Exception raised when a manifest set is invalid. Never retried."""

    def __init__(self, message: str, problems: list[str] | None = None, details: str = None):
        self.problems = list(problems or [])
        if details is None and self.problems:
            details = "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message, details)


class ConfigurationError(ConvergeError):
    """Exception raised for configuration errors."""

    pass


class ExecutorError(ConvergeError):
    """Base exception for errors raised by action executors."""

    pass


class TransientError(ExecutorError):
    """Network, rate-limit or not-yet-ready errors. Retried with backoff."""

    pass


class FatalError(ExecutorError):
    """Permission, auth or rejected-spec errors. Aborts the pass."""

    pass


class VerificationTimeoutError(ConvergeError):
    """Exception raised when health verification exceeds its bound."""

    def __init__(self, message: str, details: str = None, results: list | None = None):
        self.results = list(results or [])
        super().__init__(message, details)


class LeaseError(ConvergeError):
    """Exception raised when a reconciliation lease cannot be obtained."""

    pass
