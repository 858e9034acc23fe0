from app.db.base_class import Base
from app.models.tenant_vm import TenantVM, VMStatus
