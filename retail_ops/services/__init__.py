from .token_service import Identity, TokenService
from .authorizer import Authorizer, PersonContext
from .account_service import AccountService
from .order_service import AssignmentResult, OrderLifecycleService
from .delivery_stats_service import DeliveryStats, DeliveryStatsService
