"""Command-line entry points for the Joyería POS core.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front end
that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import cash_register, core_logic, data_manager, inventory, log, reporting, sales
from .constants import ProductStatus
from .exceptions import BusinessRuleViolation, InvalidItem, NoOpenRegister, PersistenceFailure, ValidationError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="joyeria-cli",
        description="Command-line tools for the Joyería POS data store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _spec(
    name: str,
    help_text: str,
    arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and register movements."""
    specs = {
        "add-product": _spec("add-product", "Register a new product.", _add_product_arguments, run_add_product),
        "update-product": _spec(
            "update-product", "Update fields of an existing product.", _update_product_arguments, run_update_product
        ),
        "delete-product": _spec("delete-product", "Remove a product.", _product_id_argument, run_delete_product),
        "stock-in": _spec("stock-in", "Record a stock entry (entrada).", _stock_movement_arguments, run_stock_in),
        "stock-out": _spec("stock-out", "Record a stock exit (salida).", _stock_movement_arguments, run_stock_out),
        "adjust-stock": _spec(
            "adjust-stock", "Set a product's stock (ajuste).", _adjust_stock_arguments, run_adjust_stock
        ),
        "sale": _spec("sale", "Record a sale of catalog products.", _sale_arguments, run_sale),
        "quick-sale": _spec(
            "quick-sale", "Record a category-level sale (venta rápida).", _quick_sale_arguments, run_quick_sale
        ),
        "delete-sale": _spec("delete-sale", "Delete a sale and restore its stock.", _sale_id_argument, run_delete_sale),
        "clear-sales": _spec(
            "clear-sales", "Delete every sale and restore stock.", _confirm_argument, run_clear_sales
        ),
        "open-register": _spec("open-register", "Open the cash register.", _open_register_arguments, run_open_register),
        "deposit": _spec("deposit", "Record non-sale cash income.", _cash_movement_arguments, run_deposit),
        "withdraw": _spec("withdraw", "Take cash out of the register.", _cash_movement_arguments, run_withdraw),
        "refund": _spec("refund", "Pay a cash refund.", _cash_movement_arguments, run_refund),
        "close-register": _spec(
            "close-register", "Close the cash register.", _close_register_arguments, run_close_register
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": _spec("products", "List products and stock.", _products_arguments, run_products),
        "categories": _spec("categories", "List the category catalog.", _search_argument, run_categories),
        "sales": _spec("sales", "List recent sales.", _sales_arguments, run_sales),
        "cash-state": _spec("cash-state", "Display the register reconciliation.", _cash_state_arguments, run_cash_state),
        "report": _spec("report", "Display or export a sales report.", _report_arguments, run_report),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--price", required=True)
    parser.add_argument("--stock", required=True)
    parser.add_argument("--category", required=True)
    parser.add_argument("--sku", default=None, help="Generated as JOY-YYYYMMDD-NNNN when omitted.")
    parser.add_argument("--description", default=None)
    parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")


def _update_product_arguments(parser: argparse.ArgumentParser) -> None:
    _product_id_argument(parser)
    parser.add_argument("--name", default=None)
    parser.add_argument("--price", default=None)
    parser.add_argument("--stock", default=None)
    parser.add_argument("--category", default=None)
    parser.add_argument("--sku", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--status", choices=[member.value for member in ProductStatus], default=None)


def _product_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", type=int, required=True)


def _stock_movement_arguments(parser: argparse.ArgumentParser) -> None:
    _product_id_argument(parser)
    parser.add_argument("--quantity", type=int, required=True)
    parser.add_argument("--notes", default=None)


def _adjust_stock_arguments(parser: argparse.ArgumentParser) -> None:
    _product_id_argument(parser)
    parser.add_argument("--stock", type=int, required=True)
    parser.add_argument("--reason", required=True)


def _sale_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--customer-id", type=int, default=None)
    parser.add_argument(
        "--payment-method",
        default=None,
        help="Efectivo, Tarjeta or Transferencia (defaults to the configured method).",
    )
    parser.add_argument("--notes", default=None)


def _sale_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        required=True,
        metavar="PRODUCT_ID:QTY[:PRICE]",
        help="Repeatable. The catalog price is used when PRICE is omitted.",
    )
    _sale_common_arguments(parser)


def _quick_sale_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--category", required=True)
    parser.add_argument("--quantity", required=True)
    parser.add_argument("--unit-price", required=True)
    _sale_common_arguments(parser)


def _sale_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sale-id", type=int, required=True)


def _confirm_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--yes", action="store_true", required=True, help="Confirm the deletion.")


def _open_register_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--initial-amount", required=True)
    parser.add_argument("--notes", default=None)


def _cash_movement_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--amount", required=True)
    parser.add_argument("--reason", default=None)


def _close_register_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--session-id", type=int, default=None, help="Defaults to the open session.")
    parser.add_argument("--counted", default=None, help="Cash counted in the drawer.")
    parser.add_argument("--notes", default=None)


def _search_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--search", default=None)


def _products_arguments(parser: argparse.ArgumentParser) -> None:
    _search_argument(parser)
    parser.add_argument("--active-only", action="store_true")


def _sales_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, default=10)


def _cash_state_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--session-id", type=int, default=None)
    parser.add_argument("--counted", default=None)


def _report_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    parser.add_argument("--end", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    parser.add_argument("--granularity", choices=reporting.GRANULARITIES, default="day")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--export", type=Path, default=None, help="Write the report to this .xlsx file.")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing export file.")


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_product(args: argparse.Namespace) -> inventory.ProductCommand:
    """Translate CLI args into a product creation command."""
    return inventory.ProductCommand(
        name=args.name,
        price=args.price,
        stock=args.stock,
        category=args.category,
        sku=args.sku,
        description=args.description,
        status=ProductStatus.INACTIVE if getattr(args, "inactive", False) else ProductStatus.ACTIVE,
    )


def translate_update_product(args: argparse.Namespace) -> inventory.ProductUpdateCommand:
    """Translate CLI args into a partial product update."""
    return inventory.ProductUpdateCommand(
        product_id=args.product_id,
        name=args.name,
        price=args.price,
        stock=args.stock,
        category=args.category,
        sku=args.sku,
        description=args.description,
        status=ProductStatus(args.status) if args.status else None,
    )


def translate_sale_item(context: core_logic.RuntimeContext, raw: str, index: int) -> sales.SaleItemCommand:
    """Parse ``PRODUCT_ID:QTY[:PRICE]``, defaulting the price from the catalog."""
    parts = [part.strip() for part in raw.split(":")]
    if len(parts) not in (2, 3) or not parts[0].isdigit():
        raise ValidationError(f"Invalid item '{raw}', expected PRODUCT_ID:QTY[:PRICE]", field="items", index=index)
    product_id = int(parts[0])
    if len(parts) == 3:
        price = parts[2]
    else:
        product = core_logic.get_catalog(context).find_by_id(product_id)
        if product is None:
            raise InvalidItem(
                f"Producto {product_id} no encontrado (artículo {index + 1})",
                index=index,
                field="productId",
                value=product_id,
            )
        price = product.price
    return sales.SaleItemCommand(quantity=parts[1], unit_price=price, product_id=product_id)


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> sales.SaleCommand:
    """Translate CLI args into a priced sale command."""
    items = [translate_sale_item(context, raw, index) for index, raw in enumerate(args.items)]
    return sales.build_sale_command(
        context,
        items,
        customer_id=args.customer_id,
        payment_method=args.payment_method,
        notes=args.notes,
    )


def translate_quick_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> sales.SaleCommand:
    """Translate CLI args into a single-line category sale."""
    item = sales.build_quick_sale_item(args.category, args.quantity, args.unit_price, args.notes)
    return sales.build_sale_command(
        context,
        [item],
        customer_id=args.customer_id,
        payment_method=args.payment_method,
    )


def _emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def _describe_sale(sale: data_manager.SaleRow) -> List[str]:
    lines = [
        f"Venta #{sale.sale_id} {sale.created_at:%Y-%m-%d %H:%M} {sale.payment_method} "
        f"subtotal={sale.subtotal} descuento={sale.discount} impuesto={sale.tax} total={sale.total}"
    ]
    for item in sale.items:
        target = f"producto {item.product_id}" if item.product_id is not None else item.category_name
        lines.append(f"  {item.quantity} x {item.unit_price} ({target}) = {item.subtotal}")
    return lines


def _describe_state(state: cash_register.CashState) -> List[str]:
    return [f"{key}: {value}" for key, value in state.to_dict().items()]


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = inventory.add_product(context, translate_add_product(args))
    _emit([f"Producto #{product.product_id} creado ({product.sku})"])
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow."""
    product = inventory.update_product(context, translate_update_product(args))
    _emit([f"Producto #{product.product_id} actualizado"])
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow."""
    product = inventory.delete_product(context, args.product_id)
    _emit([f"Producto #{product.product_id} eliminado"])
    return 0


def run_stock_in(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a stock entry."""
    product = inventory.record_stock_entry(
        context, inventory.StockMovementCommand(product_id=args.product_id, quantity=args.quantity, notes=args.notes)
    )
    _emit([f"Stock de #{product.product_id}: {product.stock}"])
    return 0


def run_stock_out(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a stock exit."""
    product = inventory.record_stock_exit(
        context, inventory.StockMovementCommand(product_id=args.product_id, quantity=args.quantity, notes=args.notes)
    )
    _emit([f"Stock de #{product.product_id}: {product.stock}"])
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a stock adjustment."""
    product = inventory.adjust_stock(
        context, inventory.StockAdjustmentCommand(product_id=args.product_id, stock=args.stock, reason=args.reason)
    )
    _emit([f"Stock de #{product.product_id}: {product.stock}"])
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    sale = sales.create_sale(context, translate_sale(context, args))
    _emit(_describe_sale(sale))
    return 0


def run_quick_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quick-sale workflow."""
    sale = sales.create_sale(context, translate_quick_sale(context, args))
    _emit(_describe_sale(sale))
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-sale workflow; exit 1 when the sale does not exist."""
    if not sales.delete_sale(context, args.sale_id):
        _emit([f"La venta #{args.sale_id} no existe"])
        return 1
    _emit([f"Venta #{args.sale_id} eliminada"])
    return 0


def run_clear_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the clear-sales workflow."""
    sales.clear_sales(context)
    _emit(["Ventas eliminadas"])
    return 0


def run_open_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Open the register."""
    session = cash_register.open_register(context, args.initial_amount, notes=args.notes)
    _emit([f"Caja abierta (sesión #{session.session_id}, saldo inicial {session.initial_amount})"])
    return 0


def run_deposit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a cash deposit."""
    movement = cash_register.record_deposit(context, args.amount, args.reason)
    _emit([f"Ingreso registrado: {movement.amount}"])
    return 0


def run_withdraw(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a cash withdrawal."""
    movement = cash_register.record_withdrawal(context, args.amount, args.reason)
    _emit([f"Retiro registrado: {movement.amount}"])
    return 0


def run_refund(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a cash refund."""
    movement = cash_register.record_refund(context, args.amount, args.reason)
    _emit([f"Devolución registrada: {movement.amount}"])
    return 0


def run_close_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Close the given session, or the open one."""
    session_id = args.session_id
    if session_id is None:
        session = cash_register.current_session(context)
        if session is None:
            raise NoOpenRegister("No hay caja abierta")
        session_id = session.session_id
    state = cash_register.close_register(context, session_id, args.notes, args.counted)
    _emit([f"Caja cerrada (sesión #{session_id})", *_describe_state(state)])
    return 0


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List products with their stock level."""
    products = inventory.list_products(context, include_inactive=not args.active_only)
    for product in inventory.filter_products(products, args.search):
        _emit(
            [
                f"#{product.product_id} {product.sku} {product.name} [{product.category}] "
                f"{product.price} stock={product.stock} ({inventory.stock_level(product.stock)}) {product.status}"
            ]
        )
    return 0


def run_categories(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List the category catalog."""
    _emit(f"{option.category_id}: {option.name}" for option in inventory.list_categories(context, args.search))
    return 0


def run_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List the most recent sales first."""
    recent = sorted(core_logic.list_sales(context), key=lambda sale: sale.created_at, reverse=True)
    for sale in recent[: max(args.limit, 0)]:
        _emit(_describe_sale(sale))
    return 0


def run_cash_state(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display the EstadoCaja of a session."""
    state = cash_register.load_cash_state(context, args.session_id, args.counted)
    _emit(_describe_state(state))
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display a sales report and optionally export it to ``.xlsx``."""
    report = reporting.build_sales_report(
        context, args.start, args.end, granularity=args.granularity, limit=args.limit
    )
    _emit(reporting.report_lines(report))
    if args.export is not None:
        destination = reporting.export_report_workbook(report, args.export, overwrite=args.force)
        _emit([f"Reporte exportado a {destination}"])
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return 4
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, PersistenceFailure):
        log.error("%s", error)
        return 5
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_context(context)
