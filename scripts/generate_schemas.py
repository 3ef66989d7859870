"""Generate JSON schemas for request and record files and save to schemas/ directory."""

import json
from pathlib import Path

from wasmverify.kernel.request import VerificationRequest
from wasmverify.kernel.record import LedgerEntry, VerificationRecord

SCHEMAS = {
    "verification_request.schema.json": VerificationRequest,
    "verification_record.schema.json": VerificationRecord,
    "ledger_entry.schema.json": LedgerEntry,
}


def generate_schemas(schemas_dir: Path = Path(__file__).parent.parent / "schemas"):
    """Generate JSON schemas for all persisted or exchanged models."""
    schemas_dir.mkdir(exist_ok=True)

    for filename, model in SCHEMAS.items():
        path = schemas_dir / filename
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(model.model_json_schema(), f, indent=2, ensure_ascii=False)
            f.write("\n")
        print(f"Generated: {path}")

    print("\nSchema generation complete!")


if __name__ == "__main__":
    generate_schemas()
