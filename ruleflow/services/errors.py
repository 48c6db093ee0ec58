class AutomationError(Exception):
    pass


class RuleNotFoundError(AutomationError, LookupError):
    def __init__(self, rule_id: str):
        super().__init__(f"Automation rule '{rule_id}' not found")
        self.rule_id = rule_id


class ExecutionNotFoundError(AutomationError, LookupError):
    def __init__(self, execution_id: str):
        super().__init__(f"Automation execution '{execution_id}' not found")
        self.execution_id = execution_id


class UnknownActionTypeError(AutomationError, ValueError):
    def __init__(self, action_type: str):
        super().__init__(f"Unsupported action type '{action_type}'")
        self.action_type = action_type


class RetryableEffectorError(AutomationError):
    """Raised by an effector when the failure is transient and the step should be retried."""
