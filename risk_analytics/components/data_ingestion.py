import os
import sys
from dataclasses import dataclass

import pandas as pd

from risk_analytics.exception import CustomException
from risk_analytics.logger import logging


@dataclass
class DataIngestionConfig:
    entities_data_path: str = os.path.join("dataset", "entities.csv")
    events_data_path: str = os.path.join("dataset", "events.csv")


def _frame_to_records(df):
    # NaN cells become None so validation sees them as missing.
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict(orient="records")


class DataIngestion:
    """Read entity and event tables exported from the database as CSV."""

    def __init__(self, config=None):
        self.ingestion_config = config or DataIngestionConfig()

    def _read_csv(self, path):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Source dataset not found at {path}")
        df = pd.read_csv(path, dtype=str, keep_default_na=True)
        logging.info(f"Read dataset from {path} with shape {df.shape}")
        return df

    def initiate_data_ingestion(self):
        logging.info("Entered the data ingestion component")
        try:
            entities_df = self._read_csv(self.ingestion_config.entities_data_path)
            events_df = self._read_csv(self.ingestion_config.events_data_path)

            # Source tables use customer_id/user_id and month/txn_time.
            entities_df = entities_df.rename(columns={"customer_id": "id", "user_id": "id", "country": "region"})
            events_df = events_df.rename(
                columns={
                    "customer_id": "entity_id",
                    "user_id": "entity_id",
                    "month": "timestamp",
                    "txn_time": "timestamp",
                }
            )

            logging.info("Ingestion of the data is completed")
            return _frame_to_records(entities_df), _frame_to_records(events_df)
        except Exception as e:
            raise CustomException(e, sys)
