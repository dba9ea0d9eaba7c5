# schemas/user_schemas.py
import re
import uuid
from datetime import datetime
from pydantic import BaseModel, EmailStr, constr, validator

MIN_PASSWORD_LENGTH = 8

class UserBase(BaseModel):
    email: EmailStr

class UserCreate(UserBase):
    password: constr(min_length=MIN_PASSWORD_LENGTH)

    @validator('password')
    def password_strength(cls, v):
        if not re.search(r"[A-Za-z]", v):
            raise ValueError('Password must contain a letter')
        if not re.search(r"\d", v):
            raise ValueError('Password must contain a digit')
        return v

class UserLogin(UserBase):
    password: str

class UserSchema(UserBase):
    id: uuid.UUID
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True

class Token(BaseModel):
    access_token: str
    token_type: str
