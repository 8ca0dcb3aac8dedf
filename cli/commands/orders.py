# cli/commands/orders.py
"""Order commands: run locally, or submit to and query a running gateway."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
import click
import yaml

from order_saga.api.models import parse_order
from order_saga.config import get_settings
from order_saga.errors import ValidationError
from order_saga.runtime import create_manager


DEFAULT_API_URL = "http://localhost:8000"


def _load_order(order_file: Optional[Path], name: Optional[str],
                quantity: Optional[int], total_cost: Optional[str]) -> Dict[str, Any]:
    if order_file:
        with open(order_file, 'r') as f:
            return yaml.safe_load(f) or {}
    return {"name": name, "quantity": quantity, "totalCost": total_cost}


def _emit(data: Any, output: str) -> None:
    if output == 'yaml':
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(data, indent=2, default=str))


def order_options(func):
    func = click.option('--total-cost', type=str, help='Order total')(func)
    func = click.option('--quantity', type=int, help='Quantity to order')(func)
    func = click.option('--name', help='Item name')(func)
    func = click.option('--file', '-f', 'order_file', type=click.Path(exists=True, path_type=Path),
                        help='YAML or JSON file with name, quantity and totalCost')(func)
    return func


@click.group()
def order():
    """Run, submit and inspect order fulfillment instances."""
    pass


@order.command()
@order_options
@click.option('--timeout', '-t', default=60.0, help='Seconds to wait for the saga to finish')
@click.option('--history', 'show_history', is_flag=True, help='Print the instance history')
@click.option('--output', '-o', type=click.Choice(['json', 'yaml']), default='json')
def run(order_file, name, quantity, total_cost, timeout, show_history, output):
    """Run one order to completion in-process with simulated services."""
    try:
        payload = parse_order(_load_order(order_file, name, quantity, total_cost))
    except ValidationError as e:
        click.echo(f"❌ Invalid order: {e}", err=True)
        sys.exit(2)

    async def execute() -> Dict[str, Any]:
        manager = create_manager(get_settings())
        await manager.start()
        try:
            instance_id = await manager.create_instance(payload)
            instance = await manager.wait_for_completion(instance_id, timeout=timeout)
            data = instance.to_dict()
            if show_history:
                data["history"] = [e.to_dict() for e in await manager.get_history(instance_id)]
            return data
        finally:
            await manager.stop()

    try:
        data = asyncio.run(execute())
    except asyncio.TimeoutError:
        click.echo(f"❌ Order did not finish within {timeout} seconds", err=True)
        sys.exit(1)

    _emit(data, output)


async def _request(method: str, url: str, payload: Optional[Dict[str, Any]] = None):
    async with aiohttp.ClientSession() as session:
        async with session.request(method, url, json=payload) as response:
            if response.content_type == 'application/json':
                body = await response.json()
            else:
                body = await response.text()
            return response.status, body


def _call_api(method: str, url: str, payload: Optional[Dict[str, Any]] = None):
    try:
        return asyncio.run(_request(method, url, payload))
    except aiohttp.ClientError as e:
        click.echo(f"❌ Cannot reach {url}: {e}", err=True)
        sys.exit(1)


@order.command()
@order_options
@click.option('--api-url', default=DEFAULT_API_URL, show_default=True, help='Gateway base URL')
@click.option('--output', '-o', type=click.Choice(['json', 'yaml']), default='json')
def submit(order_file, name, quantity, total_cost, api_url, output):
    """Submit an order to a running gateway."""
    payload = _load_order(order_file, name, quantity, total_cost)
    status, body = _call_api('POST', f"{api_url.rstrip('/')}/orders", payload)

    if status != 202:
        click.echo(f"❌ {status}: {body}", err=True)
        sys.exit(1)
    _emit(body, output)


@order.command()
@click.argument('instance_id')
@click.option('--api-url', default=DEFAULT_API_URL, show_default=True, help='Gateway base URL')
@click.option('--output', '-o', type=click.Choice(['json', 'yaml']), default='json')
def status(instance_id, api_url, output):
    """Show the status of an order instance."""
    code, body = _call_api('GET', f"{api_url.rstrip('/')}/orders/{instance_id}/status")
    if code != 200:
        click.echo(f"❌ {code}: {body}", err=True)
        sys.exit(1)
    _emit(body, output)


@order.command()
@click.argument('instance_id')
@click.option('--api-url', default=DEFAULT_API_URL, show_default=True, help='Gateway base URL')
@click.option('--output', '-o', type=click.Choice(['json', 'yaml']), default='json')
def history(instance_id, api_url, output):
    """Show the recorded history of an order instance."""
    code, body = _call_api('GET', f"{api_url.rstrip('/')}/orders/{instance_id}/history")
    if code != 200:
        click.echo(f"❌ {code}: {body}", err=True)
        sys.exit(1)
    _emit(body, output)
