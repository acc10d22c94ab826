# Models package - database tables
from personalization_backend.models.personalization import Personalization
from personalization_backend.models.organization_config import OrganizationConfig
from personalization_backend.models.visitor_journey import VisitorJourney
