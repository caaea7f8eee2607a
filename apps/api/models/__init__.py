from .access_grant import AccessGrant  # noqa: F401
from .audit import AuditEvent  # noqa: F401
from .consent import ConsentOrgOverride, ConsentRecord  # noqa: F401
from .organization import ParticipatingOrganization  # noqa: F401
