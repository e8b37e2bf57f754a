import sqlite3
import logging
from contextlib import contextmanager
from typing import Generator, List, Dict, Any, Optional
import json

from ..config.settings import settings

logger = logging.getLogger(__name__)

class DatabaseManager:
    """SQLite database manager for orders and KHQR payment tracking"""

    def __init__(self, db_path: str = "storefront.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database with required tables"""
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS orders (
                        order_id TEXT PRIMARY KEY,
                        customer_name TEXT NOT NULL,
                        customer_phone TEXT NOT NULL,
                        delivery_address TEXT NOT NULL,
                        items TEXT NOT NULL,
                        total REAL NOT NULL,
                        currency TEXT NOT NULL,
                        payment_method TEXT NOT NULL,
                        payment_status TEXT NOT NULL,
                        transaction_id TEXT,
                        notes TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)
                """)

                # One row per generated KHQR, keyed by its content hash
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS khqr_payments (
                        md5 TEXT PRIMARY KEY,
                        checkout_id TEXT NOT NULL,
                        amount REAL NOT NULL,
                        currency TEXT NOT NULL,
                        status TEXT NOT NULL,
                        transaction_id TEXT,
                        expires_at TIMESTAMP,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_khqr_checkout_id ON khqr_payments(checkout_id)
                """)
                conn.commit()

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _order_from_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'order_id': row['order_id'],
            'customer_name': row['customer_name'],
            'customer_phone': row['customer_phone'],
            'delivery_address': row['delivery_address'],
            'items': json.loads(row['items']),
            'total': row['total'],
            'currency': row['currency'],
            'payment_method': row['payment_method'],
            'payment_status': row['payment_status'],
            'transaction_id': row['transaction_id'],
            'notes': row['notes'],
            'created_at': row['created_at']
        }

    # Order methods
    def save_order(self, order_data: Dict[str, Any]) -> bool:
        """Save an order to the database"""
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO orders
                    (order_id, customer_name, customer_phone, delivery_address, items, total,
                     currency, payment_method, payment_status, transaction_id, notes)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    order_data['order_id'],
                    order_data['customer_name'],
                    order_data['customer_phone'],
                    order_data['delivery_address'],
                    json.dumps(order_data['items']),
                    order_data['total'],
                    order_data['currency'],
                    order_data['payment_method'],
                    order_data['payment_status'],
                    order_data.get('transaction_id'),
                    order_data.get('notes')
                ))
                conn.commit()
            return True
        except Exception as e:
            logger.error(f"Failed to save order: {e}")
            return False

    def get_order(self, order_id: str) -> Dict[str, Any]:
        """Retrieve an order by ID"""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT * FROM orders WHERE order_id = ?",
                    (order_id,)
                )
                row = cursor.fetchone()
                if row:
                    return self._order_from_row(row)
                return {}
        except Exception as e:
            logger.error(f"Failed to retrieve order: {e}")
            return {}

    def get_recent_orders(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Retrieve recent orders"""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT * FROM orders ORDER BY created_at DESC LIMIT ?",
                    (limit,)
                )
                return [self._order_from_row(row) for row in cursor.fetchall()]
        except Exception as e:
            logger.error(f"Failed to retrieve recent orders: {e}")
            return []

    # KHQR payment methods
    def save_khqr_payment(self, payment_data: Dict[str, Any]) -> bool:
        """Record a generated KHQR payment attempt"""
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO khqr_payments
                    (md5, checkout_id, amount, currency, status, transaction_id, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    payment_data['md5'],
                    payment_data['checkout_id'],
                    payment_data['amount'],
                    payment_data['currency'],
                    payment_data['status'],
                    payment_data.get('transaction_id'),
                    payment_data.get('expires_at')
                ))
                conn.commit()
            return True
        except Exception as e:
            logger.error(f"Failed to save KHQR payment: {e}")
            return False

    def update_khqr_payment_status(self, md5: str, status: str, transaction_id: Optional[str] = None) -> bool:
        """Update a KHQR payment attempt's status"""
        try:
            with self._get_connection() as conn:
                if transaction_id:
                    conn.execute(
                        "UPDATE khqr_payments SET status = ?, transaction_id = ?, updated_at = CURRENT_TIMESTAMP WHERE md5 = ?",
                        (status, transaction_id, md5)
                    )
                else:
                    conn.execute(
                        "UPDATE khqr_payments SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE md5 = ?",
                        (status, md5)
                    )
                conn.commit()
            return True
        except Exception as e:
            logger.error(f"Failed to update KHQR payment status: {e}")
            return False

    def get_khqr_payment(self, md5: str) -> Dict[str, Any]:
        """Retrieve a KHQR payment attempt by content hash"""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT * FROM khqr_payments WHERE md5 = ?",
                    (md5,)
                )
                row = cursor.fetchone()
                if row:
                    return {
                        'md5': row['md5'],
                        'checkout_id': row['checkout_id'],
                        'amount': row['amount'],
                        'currency': row['currency'],
                        'status': row['status'],
                        'transaction_id': row['transaction_id'],
                        'expires_at': row['expires_at'],
                        'created_at': row['created_at'],
                        'updated_at': row['updated_at']
                    }
                return {}
        except Exception as e:
            logger.error(f"Failed to retrieve KHQR payment: {e}")
            return {}

# Global database instance
db_instance = DatabaseManager(settings.DATABASE_URL)
