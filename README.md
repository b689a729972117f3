# copytrade

`copytrade` is the domain and persistence layer of a copy-trading platform.
Master traders publish **strategies**, attach **offers** with fee terms to
them, and investors take out **subscriptions** to those offers. A **trade**
opened on a strategy can be copied to the accounts of its active
subscribers. Trades can also be loaded in bulk from CSV or JSON files through
tracked **import jobs**. Services report creates, updates, deletes and status
changes to an audit sink.

The package has no runtime dependencies beyond the standard library.

## What is inside

| Module | Contents |
| --- | --- |
| `copytrade.common` | Status enums, `Pagination`, `PaginatedResult`, `page_count`, `TimeRange`, `new_uuid`, audit events (`AuditEvent`, `AuditSink`, `EntityType`, `AuditAction`) and the errors `RepositoryError` and `NotFoundError` |
| `copytrade.db` | `Database`, a wrapper over a DB-API connection offering `fetch_one`, `fetch_all`, `fetch_value`, `execute`, `transaction`, `ping` and `close`, and `build_dsn` |
| `copytrade.users` | `User`, its requests and `UserFilter`, `UserRepository`, `UserService` |
| `copytrade.strategies` | `Strategy`, `StrategyPerformance`, `StrategySummary`, its requests and `StrategyFilter`, `StrategyRepository`, `StrategyService` |
| `copytrade.offers` | `Offer`, its requests and `OfferFilter`, `OfferRepository`, `OfferService` |
| `copytrade.subscriptions` | `Subscription`, `SubscriptionStatusHistory`, its requests and `SubscriptionFilter`, `SubscriptionRepository`, `SubscriptionService` |
| `copytrade.trades` | `Trade`, `CopiedTrade`, `TradeDirection`, requests and filters, `TradeRepository`, `CopiedTradeRepository` |
| `copytrade.trade_service` | `TradeService` and `CopyTradeRequest` for copying a trade to subscribers |
| `copytrade.import_models` | `ImportJob`, `ImportJobError`, `ImportJobSummary`, `ImportJobType`, import requests and the filters `JobFilter` and `ErrorFilter` |
| `copytrade.import_repository` | `ImportRepository` for jobs and their per-row errors |
| `copytrade.import_service` | `ImportService`, plus `parse_csv`, `parse_json` and `map_record_to_trade_request` |

## Layers

Each domain has the same shape:

* **Models** are dataclasses and enums describing rows and requests. Status
  fields accept either the enum or its string value.
* **Repositories** take a `Database` and run the SQL. A lookup that finds
  nothing returns `None`. A status change, profit update, close or delete
  aimed at a missing row raises `NotFoundError`, as does an update that sets
  at least one field. Other database failures raise `RepositoryError`.
* **Services** sit on top of repositories. They apply pagination defaults,
  check preconditions (an offer needs an existing strategy, a copied trade
  needs an existing trade) and record an `AuditEvent` in an `AuditSink`.
  The default `AuditSink` keeps events in its `events` list; a failure to
  record an event is logged and never undoes the change.

Changing a strategy to `archived` or `deleted` through `StrategyService`
first archives every active subscription of that strategy.
`TradeService.copy_trade` copies a trade to the given subscription ids, of
which only active ones are used, or to every active subscription of the
trade's strategy when no ids are given. Copies that fail to save are skipped.

## Database access

`Database` wraps any DB-API connection. Queries are written with `$1`, `$2`,
... placeholders and rewritten for the driver's `paramstyle` (`qmark`,
`format`, `pyformat` or `numeric`). Rows come back as dicts. A statement run
outside a `transaction()` block is committed at once; inside the block,
everything is committed at the end or rolled back on an exception.

The SQL the repositories issue is written for PostgreSQL: it uses `now()`,
`RETURNING`, the view `vw_strategy_performance` and the function
`fn_get_strategy_total_profit`.

`build_dsn` assembles the PostgreSQL connection string used by the platform.
It points at the host `postgres`, port 5432, with SSL disabled:

```python
from copytrade.db import build_dsn

password = "password"
dsn = build_dsn("user", password, "copytrade")
```

## Pagination

List operations take a filter that extends `Pagination`. Its
`set_defaults()` method fills in page 1 and a limit of 20 when they are
missing, caps the limit at 100, and computes the row offset. Results come
back as a `PaginatedResult` holding the rows, the total count, the page, the
limit and the number of pages, computed by `page_count`:

```python
from copytrade.common import Pagination, page_count

pagination = Pagination(page=3, limit=500)
pagination.set_defaults()
# pagination.limit is now 100 and pagination.offset is 200

page_count(41, 20)  # 3
```

## Importing trades

`ImportService.import_trades` records a new `trades` import job, reads the
file and hands its contents to `process_trade_import`, in a background thread
unless the service was built with `background=False`. The job is returned as
it was created. Processing parses the rows (`csv` or `json` format), creates
one trade per valid row, stores an `ImportJobError` for each row that fails,
updates the progress counters every 100 rows and at the end, and marks the
job `success`. If some rows failed and none succeeded, the job is marked
`failed` instead. An unsupported format or an unparsable file fails the job
with a single recorded error. `get_job_summary` reports row counts and how
long the job ran.

A row must provide `symbol`, `direction` (or `type`, either `buy` or
`sell`), `volume_lots` (or `volume`), `open_price` and `open_time`.
`open_time` may be RFC 3339 or `YYYY-MM-DD HH:MM:SS`, the latter read as UTC.
The parsing helpers can be used on their own:

```python
from copytrade.import_service import parse_csv, map_record_to_trade_request

records = parse_csv(
    b"symbol,direction,volume_lots,open_price,open_time\n"
    b"EURUSD,buy,0.5,1.0850,2024-01-15 10:30:00\n"
)
request = map_record_to_trade_request(records[0], strategy_id=7, account_id=12)
```

## What this package does not do

* It has no HTTP API, server or command-line program; it is a library to be
  called from one.
* It does not create the database schema, views or functions its queries
  rely on, and ships no database driver: the caller opens the connection and
  passes it to `Database`.
* It holds no repositories for accounts, commissions or statistics, and
  audit events are kept in memory unless a subclass of `AuditSink` stores
  them elsewhere.

## Tests

The test suite uses pytest, installed with the `test` extra.