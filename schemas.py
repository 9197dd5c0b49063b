from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    username: str
    password: str
    public_key: str | None = Field(default=None, alias="publicKey")

    model_config = ConfigDict(populate_by_name=True)


class UserOut(BaseModel):
    id: int
    username: str
    is_admin: bool
    public_key: str | None = None

    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str


class MessageOut(BaseModel):
    id: str
    username: str
    text: str
    chat: str
    time: int = Field(validation_alias=AliasChoices("time", "created_at"))

    model_config = ConfigDict(from_attributes=True)


class GroupOut(BaseModel):
    name: str

    model_config = ConfigDict(from_attributes=True)
