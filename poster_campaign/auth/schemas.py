from typing import Optional

from pydantic import BaseModel


class AuthUser(BaseModel):
    user_id: int
    username: str
    first_name: str
    last_name: str
    role: str          # company_employee | client | contractor
    company_id: Optional[int] = None
    is_active: bool = True

    @property
    def is_employee(self) -> bool:
        return self.role == "company_employee"
