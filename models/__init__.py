from .person import Person
from .token import Token
from .account import Account
from .position import Position
from .activity import Activity
from .symbol import Symbol
from .market_quote import MarketQuote
from .portfolio_snapshot import PortfolioSnapshot
