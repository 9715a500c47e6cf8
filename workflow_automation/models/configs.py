"""Configuration models for node executors.

Node configuration is stored as opaque JSON whose shape belongs to the node's
executor. Keys are accepted in camelCase (as saved by the designer) or
snake_case.
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
BODY_METHODS = ("POST", "PUT", "PATCH")
DELAY_UNITS = {
    "milliseconds": 0.001,
    "seconds": 1.0,
    "minutes": 60.0,
    "hours": 3600.0,
}
DATABASE_TYPE_ALIASES = {
    "postgresql": "postgresql",
    "postgres": "postgresql",
    "sqlserver": "mssql",
    "mssql": "mssql",
    "mysql": "mysql",
    "sqlite": "sqlite",
}


class NodeConfig(BaseModel):
    """Base class for executor configuration models."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class HttpRequestConfig(NodeConfig):
    method: str = Field("GET", description="HTTP method")
    url: str = Field(..., description="Absolute http(s) URL")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: Optional[Union[str, Dict[str, Any], List[Any]]] = Field(
        None,
        description="Body sent as JSON for POST, PUT and PATCH"
    )
    timeout: Optional[float] = Field(None, gt=0, description="Request timeout in seconds")

    @field_validator('method', mode='before')
    @classmethod
    def validate_method(cls, method):
        method = (method or "GET").strip().upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        return method

    @field_validator('url')
    @classmethod
    def validate_url(cls, url):
        if not url or not url.strip():
            raise ValueError("HTTP Request node requires a URL")
        url = url.strip()
        if not url.lower().startswith(("http://", "https://")):
            raise ValueError(f"URL must be absolute http(s): {url}")
        return url

    @field_validator('headers', mode='before')
    @classmethod
    def default_headers(cls, headers):
        if headers is None:
            return {}
        return {str(key): str(value) for key, value in headers.items()}


class DelayConfig(NodeConfig):
    duration: int = Field(1000, ge=0, description="Delay length in the configured unit")
    unit: str = Field("milliseconds", description="milliseconds, seconds, minutes or hours")

    @field_validator('unit', mode='before')
    @classmethod
    def validate_unit(cls, unit):
        unit = (unit or "milliseconds").strip().lower()
        if unit not in DELAY_UNITS:
            raise ValueError(f"Unsupported delay unit: {unit}")
        return unit

    @property
    def seconds(self) -> float:
        return self.duration * DELAY_UNITS[self.unit]


class ConditionConfig(NodeConfig):
    expression: str = Field(
        ...,
        validation_alias=AliasChoices("expression", "condition"),
        description="Boolean expression"
    )

    @field_validator('expression')
    @classmethod
    def validate_expression(cls, expression):
        if not expression or not expression.strip():
            raise ValueError("Condition node requires an expression")
        return expression.strip()


class TransformConfig(NodeConfig):
    script: str = Field(..., description="Expression producing the transformed value")

    @field_validator('script')
    @classmethod
    def validate_script(cls, script):
        if not script or not script.strip():
            raise ValueError("Transform node requires a script")
        return script.strip()


class EmailConfig(NodeConfig):
    from_address: str = Field("noreply@workflowautomation.com", alias="from")
    to: str = Field(..., description="Recipients separated by ';'")
    cc: Optional[str] = Field(None, description="Copy recipients separated by ';'")
    subject: str = Field("Workflow Notification")
    body: str = Field("")
    is_html: bool = Field(False)
    smtp_server: str = Field("localhost")
    smtp_port: int = Field(25, ge=1, le=65535)
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    use_ssl: Optional[bool] = Field(None, description="Defaults to on when credentials are supplied")

    @field_validator('to')
    @classmethod
    def validate_to(cls, to):
        if not to or not split_addresses(to):
            raise ValueError("Email node requires a To address")
        return to

    @field_validator('subject', 'body', 'from_address', 'smtp_server', mode='before')
    @classmethod
    def none_means_default(cls, value, info):
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @property
    def recipients(self) -> List[str]:
        return split_addresses(self.to)

    @property
    def cc_recipients(self) -> List[str]:
        return split_addresses(self.cc)

    @property
    def has_credentials(self) -> bool:
        return bool(self.smtp_username and self.smtp_password)

    @property
    def ssl_enabled(self) -> bool:
        if self.use_ssl is not None:
            return self.use_ssl
        return self.has_credentials


class ScriptConfig(NodeConfig):
    code: str = Field(..., description="Python source run under RestrictedPython")
    timeout: Optional[float] = Field(None, gt=0, description="Script timeout in seconds")

    @field_validator('code')
    @classmethod
    def validate_code(cls, code):
        if not code or not code.strip():
            raise ValueError("Script node requires code")
        return code


class DatabaseConfig(NodeConfig):
    database_type: str = Field("postgresql", description="postgresql, sqlserver, mysql or sqlite")
    connection_string: str = Field(..., description="SQLAlchemy database URL")
    query: str = Field(..., description="Statement or stored procedure name")
    is_stored_procedure: bool = Field(False)
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Named bind parameters")

    @field_validator('database_type', mode='before')
    @classmethod
    def validate_database_type(cls, database_type):
        key = (database_type or "postgresql").strip().lower()
        if key not in DATABASE_TYPE_ALIASES:
            raise ValueError(f"Unsupported database type: {database_type}")
        return DATABASE_TYPE_ALIASES[key]

    @field_validator('connection_string', 'query')
    @classmethod
    def validate_not_empty(cls, value, info):
        if not value or not value.strip():
            raise ValueError(f"Database node requires {info.field_name}")
        return value.strip()

    @field_validator('parameters', mode='before')
    @classmethod
    def default_parameters(cls, parameters):
        return parameters if parameters is not None else {}


def split_addresses(addresses: Optional[str]) -> List[str]:
    """Split a ';'-separated address list, dropping blanks."""
    if not addresses:
        return []
    return [address.strip() for address in addresses.split(";") if address.strip()]
