class WorkspaceAgentError(Exception):
    """Base exception for the workspace agent backend."""

    pass


class VMStoreError(WorkspaceAgentError):
    """Raised when a per-workspace database operation fails."""

    pass


class InvalidSchemaError(VMStoreError):
    """Raised when a table definition or schema change is malformed."""

    pass


class ColumnExistsError(VMStoreError):
    """Raised when a column rename targets a name that already exists."""

    def __init__(self, table: str, column: str):
        self.table = table
        self.column = column
        super().__init__(f"column '{column}' already exists in table '{table}'")


class TableNotFoundError(VMStoreError):
    """Raised when a table does not exist in the workspace database."""

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"table '{table}' not found")


class InvalidWorkspaceIdError(VMStoreError):
    """Raised when a workspace id cannot be mapped to a database file."""

    pass


class VMRuntimeError(WorkspaceAgentError):
    """Raised when the JavaScript runtime fails to build or execute."""

    pass


class StoreError(WorkspaceAgentError):
    """Raised when workspace metadata operations fail."""

    pass


class WorkspaceNotFoundError(StoreError):
    """Raised when a workspace does not exist."""

    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"workspace '{workspace_id}' not found")


class SessionBusyError(WorkspaceAgentError):
    """Raised when a turn is started on a session that is already running."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session '{session_id}' is already running a turn")


class PlanStateError(WorkspaceAgentError):
    """Raised when a plan mutation is not allowed in the current session phase."""

    pass


class PersonaNotFoundError(WorkspaceAgentError):
    """Raised when a persona id is unknown or disabled."""

    def __init__(self, persona_id: str):
        self.persona_id = persona_id
        super().__init__(f"persona '{persona_id}' not found")


class LLMError(WorkspaceAgentError):
    """Raised when the LLM provider call fails."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class SessionNotFoundError(WorkspaceAgentError):
    """Raised when a session id is unknown (never created or already reaped)."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session '{session_id}' not found")


class SessionMismatchError(WorkspaceAgentError):
    """Raised when a session id is reused for a different workspace or user."""

    pass
