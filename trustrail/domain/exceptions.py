"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class StatementParseError(DomainException):
    """Bank statement export is empty or has no usable date/description columns"""

    pass


class InsufficientDataError(DomainException):
    """Not enough transaction history to make decision"""

    pass


class WorkflowConfigurationError(DomainException):
    """TrustWallet plan or approval thresholds are inconsistent"""

    pass


class BusinessRuleViolation(DomainException):
    """Requested operation is not allowed in the entity's current state"""

    pass


class InvalidTransitionError(BusinessRuleViolation):
    """Application status change is not on the legal edge set"""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal status transition {current} -> {target}")
        self.current = current
        self.target = target


class EntityNotFoundError(DomainException):
    """Referenced record does not exist"""

    pass


class AmbiguousPaymentMatchError(DomainException):
    """Provider debit could not be tied to exactly one application"""

    pass


class PaymentProviderError(DomainException):
    """Payment/mandate provider returned an error or is unavailable"""

    pass


class StatementAnalyzerError(DomainException):
    """External document analyzer failed or returned unusable output"""

    pass


class WebhookPayloadError(DomainException):
    """Provider webhook is missing the fields its event type requires"""

    pass


class ConfigurationError(DomainException):
    """Required secret or setting is missing"""

    pass
