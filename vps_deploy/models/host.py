"""Host-related data models."""

from pydantic import BaseModel, Field, field_validator, model_validator


class Host(BaseModel):
    """A remote host as supplied by the host registry.

    The core only reads host records; it never persists or mutates them.
    """

    id: str = Field(min_length=1)
    name: str = ""
    address: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(min_length=1)
    password: str | None = Field(default=None, repr=False)
    key_path: str | None = None
    key_passphrase: str | None = Field(default=None, repr=False)
    group: str = "default"
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True

    @field_validator("address", "username")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @model_validator(mode="after")
    def _default_name(self) -> "Host":
        if not self.name:
            self.name = self.id
        return self

    @property
    def endpoint(self) -> str:
        """``user@address:port`` form used in log events."""
        return f"{self.username}@{self.address}:{self.port}"

    @property
    def has_credential(self) -> bool:
        return bool(self.password or self.key_path)
