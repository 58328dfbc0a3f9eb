from typing import Optional


class AppError(Exception):
    """Base for errors that map onto an API envelope response."""

    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# Validation (400)
class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class QuizValidationError(ValidationError):
    pass


class InvalidQuestionIndexError(ValidationError):
    def __init__(self, index: int):
        super().__init__(f"Invalid question index: {index}")


class InvalidTokenError(ValidationError):
    default_message = "Invalid or expired token"


# Business rules (400)
class BusinessRuleError(AppError):
    status_code = 400
    default_message = "Operation not allowed"


class QuizFinishedError(BusinessRuleError):
    default_message = "Cannot submit answer - quiz is already finished"


class UserAlreadyActivatedError(BusinessRuleError):
    default_message = "User account is already activated"


# Authentication (401 / 403)
class BadCredentialsError(AppError):
    status_code = 401
    default_message = "Invalid username/email or password"


class NotAuthenticatedError(AppError):
    status_code = 401
    default_message = "Authentication required"


class AccountNotActivatedError(AppError):
    status_code = 403
    default_message = "Account is not activated. Please check your email for the activation OTP."


class AccountDisabledError(AppError):
    status_code = 403
    default_message = "Account is disabled"


class AccessDeniedError(AppError):
    status_code = 403
    default_message = "You do not have access to this resource"


# Not found (404)
class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class QuizNotFoundError(NotFoundError):
    default_message = "Quiz not found"


class QuizStateNotFoundError(NotFoundError):
    default_message = "Quiz state not found"


class UserNotFoundError(NotFoundError):
    default_message = "User not found"


class ChatSessionNotFoundError(NotFoundError):
    default_message = "Chat session not found"


# Conflict (409)
class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class UserAlreadyExistsError(ConflictError):
    pass


class ConcurrentModificationError(ConflictError):
    default_message = "The quiz was modified concurrently. Please retry."


# Rate limiting (429)
class RateLimitExceededError(AppError):
    status_code = 429
    default_message = "Rate limit exceeded"


# External dependencies (500 / 502)
class QuizGenerationError(AppError):
    status_code = 500
    default_message = "Failed to generate quiz. Please try again later."


class ChatError(AppError):
    status_code = 500
    default_message = "Failed to get chat response. Please try again."


class EmailDeliveryError(AppError):
    status_code = 502
    default_message = "Failed to send email"


class LLMGenerationError(AppError):
    status_code = 502
    default_message = "Language model request failed"


class SearchError(AppError):
    status_code = 502
    default_message = "Web search failed"
