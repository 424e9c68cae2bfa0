#!/usr/bin/env python3
"""
Sample Data Loading Script for the MVR Exchange

Generates random MVR payloads and ingests them through the record store,
so that the dedup window, audit emission and retrieval can be exercised
against a real database.

Usage:
    python load_sample_data.py [--count 25] [--company-id SAMPLE-CO] [--seed 7] [--batch]
"""

import argparse
import logging
import random

from audit.emitter import AuditDispatcher, AuditEventEmitter, FileAuditSink
from config_manager import get_config
from database.connection import DatabaseSessionProvider, DatabaseSettings
from database.record_store import BatchIngestionError, BatchIngestionRequest, IngestionRequest, PersistenceError, RecordStore
from log_utils import configure_logging
from sample_data import generate_high_risk_sample_mvr, generate_license_numbers, generate_sample_mvr

logger = logging.getLogger(__name__)


def build_payloads(count: int, rng: random.Random, high_risk_ratio: float):
    payloads = []
    for license_number in generate_license_numbers(count, rng):
        if rng.random() < high_risk_ratio:
            payloads.append(generate_high_risk_sample_mvr(license_number, rng))
        else:
            payloads.append(generate_sample_mvr(license_number, rng))
    return payloads


def main():
    parser = argparse.ArgumentParser(description="Load sample MVR data into the MVR Exchange database")
    parser.add_argument("--count", type=int, default=25, help="Number of subjects to generate")
    parser.add_argument("--company-id", default="SAMPLE-CO", help="Company recorded as the uploader")
    parser.add_argument("--purpose", default="UNDERWRITING", help="Permissible purpose for the uploads")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible data")
    parser.add_argument("--high-risk-ratio", type=float, default=0.2, help="Share of high-risk samples")
    parser.add_argument("--batch", action="store_true", help="Ingest everything as one batch")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    config = get_config(args.config)
    configure_logging(config.logging)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("=" * 50)
    logger.info("MVR Exchange Sample Data Loading")
    logger.info("=" * 50)

    settings = DatabaseSettings.from_env()
    if config.database.url:
        settings.url = settings.url or config.database.url
    provider = DatabaseSessionProvider(settings)
    dispatcher = AuditDispatcher(
        AuditEventEmitter(FileAuditSink(config.audit.sink_path), function_name="load-sample-data"),
        max_workers=config.audit.dispatch_workers,
        timeout_seconds=config.audit.dispatch_timeout_seconds
    )

    try:
        provider.init()
        provider.create_tables()
        store = RecordStore(provider, dispatcher, config.ingestion)
        payloads = build_payloads(args.count, random.Random(args.seed), args.high_risk_ratio)

        if args.batch:
            try:
                result = store.ingest_batch(BatchIngestionRequest(
                    company_id=args.company_id,
                    permissible_purpose=args.purpose,
                    payloads=payloads
                ))
                summary = result.summary()
            except BatchIngestionError as e:
                summary = e.result.summary()
                logger.error("Batch rolled back: %s", e)
        else:
            summary = {"new_records": 0, "updated_records": 0, "skipped_records": 0, "failed_records": 0}
            for payload in payloads:
                try:
                    result = store.ingest(IngestionRequest(
                        company_id=args.company_id,
                        permissible_purpose=args.purpose,
                        mvr=payload
                    ))
                    summary[f"{result.outcome.value.lower()}_records"] += 1
                except PersistenceError as e:
                    summary["failed_records"] += 1
                    logger.error("Failed to load %s: %s", payload["drivers_license_number"][-4:], e)

        logger.info("Results: %s", summary)
        logger.info("=" * 50)
        logger.info("Sample data loading complete!")
        logger.info("=" * 50)
    finally:
        dispatcher.close()
        provider.close()


if __name__ == "__main__":
    main()
