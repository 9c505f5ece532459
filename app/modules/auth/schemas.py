from pydantic import BaseModel
from typing import Optional
from uuid import UUID


class AuthContext(BaseModel):
    """Contexto del usuario autenticado, tomado del token emitido por el servicio de auth"""
    user_id: UUID
    email: Optional[str] = None
    user_role: Optional[str] = None

    @property
    def actor(self) -> str:
        """Identificador del actor para auditoría"""
        return self.email or str(self.user_id)
