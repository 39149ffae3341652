"""
Script to import flow definitions into MongoDB database.
Each argument is a JSON file holding one FlowDefinition (or a list of them),
e.g. exported from the flow editor. Definitions are validated before they are
inserted into the flows collection; invalid ones are reported and skipped.

Usage:
    python scripts/import_flow_data.py flows/appointment_booker.json [--page-id PAGE_ID] [--replace]
"""
import asyncio
import argparse
import json
import sys
import os
from typing import List, Dict, Any
from pydantic import ValidationError

# Add src directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Models
from models.flow_data import FlowData

# Exceptions
from exceptions.flow_exception import FlowValidationException


def load_definitions(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as file:
        content = json.load(file)
    if isinstance(content, list):
        return content
    return [content]


def parse_definition(definition: Dict[str, Any], page_id: str = None) -> FlowData:
    """
    Validate one FlowDefinition. Raises FlowValidationException listing every problem.
    """
    if page_id:
        definition = {**definition, "pageId": page_id}
    try:
        flow = FlowData.model_validate(definition)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        raise FlowValidationException(message="; ".join(errors), errors=errors)
    return flow.ensure_valid()


async def import_flow_data(paths: List[str], page_id: str = None, replace: bool = False) -> int:
    """Import flow definitions into MongoDB. Returns the number of flows imported."""
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

    imported = 0
    skipped = 0
    try:
        for path in paths:
            try:
                definitions = load_definitions(path)
            except (OSError, json.JSONDecodeError) as e:
                print(f"❌ Could not read {path}: {str(e)}")
                skipped += 1
                continue

            for definition in definitions:
                name = definition.get("name", "<unnamed>") if isinstance(definition, dict) else "<not an object>"
                try:
                    flow = parse_definition(definition, page_id=page_id)
                except FlowValidationException as e:
                    print(f"❌ Skipping flow '{name}' from {path}:")
                    for error in e.errors:
                        print(f"   - {error}")
                    skipped += 1
                    continue

                if flow.id:
                    existing_flow = await flow_db.get_flow_by_id(flow.id)
                    if existing_flow:
                        if not replace:
                            print(f"⚠️  Flow with ID {flow.id} already exists, skipping (use --replace to overwrite)")
                            skipped += 1
                            continue
                        await flow_db.delete_flow(flow.id)
                        print(f"✅ Deleted existing flow {flow.id}")

                flow.version = 1
                flow.triggerCount = 0
                flow.completionCount = 0
                saved_flow = await flow_db.create_flow(flow)
                imported += 1
                print(f"✅ Flow '{saved_flow.name}' imported")
                print(f"   Flow ID: {saved_flow.id}")
                print(f"   Page ID: {saved_flow.pageId}")
                print(f"   Nodes: {len(saved_flow.nodes)}")
                print(f"   Triggers: {len(saved_flow.globalTriggers)}")
    finally:
        flow_db.close()

    print(f"\nImported {imported} flow(s), skipped {skipped}")
    return imported


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Import flow definitions into MongoDB")
    parser.add_argument("paths", nargs="+", help="JSON files holding flow definitions")
    parser.add_argument("--page-id", default=None, help="Meta page ID to assign to every imported flow")
    parser.add_argument("--replace", action="store_true", help="Overwrite flows whose ID already exists")
    args = parser.parse_args()

    print("=" * 80)
    print("Flow Data Import Script")
    print("=" * 80)

    asyncio.run(import_flow_data(args.paths, page_id=args.page_id, replace=args.replace))
