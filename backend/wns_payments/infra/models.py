"""Central registry for SQLAlchemy models.

Importing this module loads every ORM class so that foreign keys resolve and
``Base.metadata`` is complete for ``create_all`` and Alembic autogenerate.
"""

from wns_payments.domain.groups import db_models as group_db_models  # noqa: F401
from wns_payments.domain.memberships import db_models as membership_db_models  # noqa: F401
from wns_payments.domain.revenue import db_models as revenue_db_models  # noqa: F401
from wns_payments.domain.payouts import db_models as payout_db_models  # noqa: F401
from wns_payments.domain.disputes import db_models as dispute_db_models  # noqa: F401
from wns_payments.domain.refunds import db_models as refund_db_models  # noqa: F401
from wns_payments.domain.coupons import db_models as coupon_db_models  # noqa: F401
from wns_payments.domain.webhooks import db_models as webhook_db_models  # noqa: F401
