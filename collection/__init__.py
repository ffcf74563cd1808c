# Collection module
from .errors import (
    CollectionError,
    ConcurrencyConflict,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .models import (
    Graded,
    Grading,
    GradingStatus,
    Lot,
    Raw,
    grading_from_fields,
)
from .manager import (
    add_lot,
    remove_lot,
    get_lot,
    get_lots,
    get_ledger_balance,
    get_portfolio_summary,
)
from .grouping import ValuationGroup, group_for_display
from .trades import (
    ReceivedItem,
    TradedAwayItem,
    compute_allocation,
    list_trades,
    settle,
)
