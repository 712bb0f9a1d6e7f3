import copy
import itertools
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from lib.error_handler import AppError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

# Postgres error code surfaced by postgrest's APIError
UNIQUE_VIOLATION = '23505'

class Database:
    """Row-level storage used by the account, credit and session services.

    Rows are plain dicts with ISO-8601 timestamps, the shape Supabase returns.
    """

    async def get_user(self, phone_number: str) -> Optional[Record]:
        raise NotImplementedError

    async def insert_user(self, record: Record) -> Record:
        raise NotImplementedError

    async def update_user(self, phone_number: str, fields: Record) -> None:
        raise NotImplementedError

    async def activate_user(self, phone_number: str, updated_at: str) -> Optional[str]:
        """Set status to active unless it already is, in one step.

        Returns the status the row had before, or None when nothing changed.
        """
        raise NotImplementedError

    async def add_credits(self, phone_number: str, amount: int, updated_at: str) -> None:
        raise NotImplementedError

    async def debit_credits(self, phone_number: str, amount: int, updated_at: str) -> bool:
        """Decrement the balance only if it covers ``amount``, in one step"""
        raise NotImplementedError

    async def insert_transaction(self, record: Record) -> Record:
        raise NotImplementedError

    async def list_transactions(self, phone_number: str, limit: int = 50) -> List[Record]:
        raise NotImplementedError

    async def get_latest_session(self, phone_number: str) -> Optional[Record]:
        raise NotImplementedError

    async def insert_session(self, record: Record) -> Record:
        raise NotImplementedError

    async def update_session(self, session_id: int, fields: Record) -> None:
        raise NotImplementedError

    async def delete_sessions_before(self, cutoff: str) -> int:
        raise NotImplementedError

    async def upsert_location_fix(self, record: Record) -> None:
        raise NotImplementedError

    async def get_location_fix(self, phone_number: str) -> Optional[Record]:
        raise NotImplementedError

    async def insert_agent(self, record: Record) -> Record:
        raise NotImplementedError

    async def get_agent(self, agent_id: int) -> Optional[Record]:
        raise NotImplementedError

    async def list_agents(self, phone_number: str) -> List[Record]:
        raise NotImplementedError

    async def update_agent(self, agent_id: int, fields: Record) -> None:
        raise NotImplementedError

    async def delete_agent(self, agent_id: int) -> None:
        raise NotImplementedError

    async def set_active_agent(self, phone_number: str, agent_id: Optional[int], updated_at: str) -> None:
        """Mark one agent active and every sibling inactive, in one step.

        ``agent_id=None`` deactivates them all.
        """
        raise NotImplementedError

class SupabaseDatabase(Database):
    """Supabase-backed storage.

    Atomic operations go through Postgres functions defined in
    ``scripts/schema.sql``.
    """

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client
        self.users_table = 'users'
        self.sessions_table = 'sessions'
        self.locations_table = 'location_fixes'
        self.transactions_table = 'transactions'
        self.agents_table = 'custom_agents'
        logger.info("Supabase storage initialized")

    @classmethod
    def from_settings(cls, settings) -> 'SupabaseDatabase':
        return cls(create_client(settings.supabase_url, settings.supabase_key))

    def _execute(self, query, action: str):
        try:
            result = query.execute()
        except Exception as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                logger.info(f"Duplicate row during {action}: {str(e)}")
                raise AppError(f"Row already exists during {action}", status_code=409)
            logger.error(f"Supabase error during {action}: {str(e)}")
            raise AppError(f"Database error during {action}: {str(e)}", status_code=500)
        return result

    def _first(self, result) -> Optional[Record]:
        return result.data[0] if result.data else None

    async def get_user(self, phone_number: str) -> Optional[Record]:
        result = self._execute(
            self.supabase.table(self.users_table)
            .select('*')
            .eq('phone_number', phone_number)
            .limit(1),
            'get_user'
        )
        return self._first(result)

    async def insert_user(self, record: Record) -> Record:
        result = self._execute(self.supabase.table(self.users_table).insert(record), 'insert_user')
        return self._first(result) or record

    async def update_user(self, phone_number: str, fields: Record) -> None:
        self._execute(
            self.supabase.table(self.users_table).update(fields).eq('phone_number', phone_number),
            'update_user'
        )

    async def activate_user(self, phone_number: str, updated_at: str) -> Optional[str]:
        result = self._execute(
            self.supabase.rpc('activate_user', {
                'p_phone_number': phone_number,
                'p_updated_at': updated_at
            }),
            'activate_user'
        )
        return result.data or None

    async def add_credits(self, phone_number: str, amount: int, updated_at: str) -> None:
        self._execute(
            self.supabase.rpc('add_credits', {
                'p_phone_number': phone_number,
                'p_amount': amount,
                'p_updated_at': updated_at
            }),
            'add_credits'
        )

    async def debit_credits(self, phone_number: str, amount: int, updated_at: str) -> bool:
        result = self._execute(
            self.supabase.rpc('debit_credits', {
                'p_phone_number': phone_number,
                'p_amount': amount,
                'p_updated_at': updated_at
            }),
            'debit_credits'
        )
        return bool(result.data)

    async def insert_transaction(self, record: Record) -> Record:
        result = self._execute(
            self.supabase.table(self.transactions_table).insert(record),
            'insert_transaction'
        )
        return self._first(result) or record

    async def list_transactions(self, phone_number: str, limit: int = 50) -> List[Record]:
        result = self._execute(
            self.supabase.table(self.transactions_table)
            .select('*')
            .eq('phone_number', phone_number)
            .order('created_at', desc=True)
            .limit(limit),
            'list_transactions'
        )
        return result.data or []

    async def get_latest_session(self, phone_number: str) -> Optional[Record]:
        result = self._execute(
            self.supabase.table(self.sessions_table)
            .select('*')
            .eq('phone_number', phone_number)
            .order('updated_at', desc=True)
            .limit(1),
            'get_latest_session'
        )
        return self._first(result)

    async def insert_session(self, record: Record) -> Record:
        result = self._execute(
            self.supabase.table(self.sessions_table).insert(record),
            'insert_session'
        )
        return self._first(result) or record

    async def update_session(self, session_id: int, fields: Record) -> None:
        self._execute(
            self.supabase.table(self.sessions_table).update(fields).eq('id', session_id),
            'update_session'
        )

    async def delete_sessions_before(self, cutoff: str) -> int:
        result = self._execute(
            self.supabase.table(self.sessions_table).delete().lt('updated_at', cutoff),
            'delete_sessions_before'
        )
        return len(result.data or [])

    async def upsert_location_fix(self, record: Record) -> None:
        self._execute(
            self.supabase.table(self.locations_table).upsert(record, on_conflict='phone_number'),
            'upsert_location_fix'
        )

    async def get_location_fix(self, phone_number: str) -> Optional[Record]:
        result = self._execute(
            self.supabase.table(self.locations_table)
            .select('*')
            .eq('phone_number', phone_number)
            .limit(1),
            'get_location_fix'
        )
        return self._first(result)

    async def insert_agent(self, record: Record) -> Record:
        result = self._execute(
            self.supabase.table(self.agents_table).insert(record),
            'insert_agent'
        )
        return self._first(result) or record

    async def get_agent(self, agent_id: int) -> Optional[Record]:
        result = self._execute(
            self.supabase.table(self.agents_table).select('*').eq('id', agent_id).limit(1),
            'get_agent'
        )
        return self._first(result)

    async def list_agents(self, phone_number: str) -> List[Record]:
        result = self._execute(
            self.supabase.table(self.agents_table)
            .select('*')
            .eq('phone_number', phone_number)
            .order('created_at'),
            'list_agents'
        )
        return result.data or []

    async def update_agent(self, agent_id: int, fields: Record) -> None:
        self._execute(
            self.supabase.table(self.agents_table).update(fields).eq('id', agent_id),
            'update_agent'
        )

    async def delete_agent(self, agent_id: int) -> None:
        self._execute(
            self.supabase.table(self.agents_table).delete().eq('id', agent_id),
            'delete_agent'
        )

    async def set_active_agent(self, phone_number: str, agent_id: Optional[int], updated_at: str) -> None:
        self._execute(
            self.supabase.rpc('activate_agent', {
                'p_phone_number': phone_number,
                'p_agent_id': agent_id,
                'p_updated_at': updated_at
            }),
            'set_active_agent'
        )

class MemoryDatabase(Database):
    """In-process storage for local development and tests.

    No method awaits between reading and writing, so each call is atomic
    with respect to other tasks on the event loop.
    """

    def __init__(self):
        self.users: Dict[str, Record] = {}
        self.sessions: Dict[int, Record] = {}
        self.location_fixes: Dict[str, Record] = {}
        self.transactions: List[Record] = []
        self.agents: Dict[int, Record] = {}
        self._session_ids = itertools.count(1)
        self._transaction_ids = itertools.count(1)
        self._agent_ids = itertools.count(1)

    async def get_user(self, phone_number: str) -> Optional[Record]:
        user = self.users.get(phone_number)
        return copy.deepcopy(user) if user else None

    async def insert_user(self, record: Record) -> Record:
        if record['phone_number'] in self.users:
            raise AppError(f"User already exists: {record['phone_number']}", status_code=409)
        self.users[record['phone_number']] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def update_user(self, phone_number: str, fields: Record) -> None:
        if phone_number in self.users:
            self.users[phone_number].update(copy.deepcopy(fields))

    async def activate_user(self, phone_number: str, updated_at: str) -> Optional[str]:
        user = self.users.get(phone_number)
        if not user or user['status'] == 'active':
            return None
        previous = user['status']
        user.update({'status': 'active', 'consent_timestamp': updated_at, 'updated_at': updated_at})
        return previous

    async def add_credits(self, phone_number: str, amount: int, updated_at: str) -> None:
        user = self.users.get(phone_number)
        if user:
            user['credits_remaining'] += amount
            user['updated_at'] = updated_at

    async def debit_credits(self, phone_number: str, amount: int, updated_at: str) -> bool:
        user = self.users.get(phone_number)
        if not user or user['credits_remaining'] < amount:
            return False
        user['credits_remaining'] -= amount
        user['updated_at'] = updated_at
        return True

    async def insert_transaction(self, record: Record) -> Record:
        row = dict(record, id=next(self._transaction_ids))
        self.transactions.append(row)
        return dict(row)

    async def list_transactions(self, phone_number: str, limit: int = 50) -> List[Record]:
        rows = [dict(row) for row in self.transactions if row['phone_number'] == phone_number]
        # Newest first; ids break ties between rows logged in the same instant
        rows.sort(key=lambda row: (row['created_at'], row['id']), reverse=True)
        return rows[:limit]

    async def get_latest_session(self, phone_number: str) -> Optional[Record]:
        rows = [row for row in self.sessions.values() if row['phone_number'] == phone_number]
        if not rows:
            return None
        latest = max(rows, key=lambda row: (row['updated_at'], row['id']))
        return copy.deepcopy(latest)

    async def insert_session(self, record: Record) -> Record:
        row = dict(copy.deepcopy(record), id=next(self._session_ids))
        self.sessions[row['id']] = row
        return copy.deepcopy(row)

    async def update_session(self, session_id: int, fields: Record) -> None:
        if session_id in self.sessions:
            self.sessions[session_id].update(copy.deepcopy(fields))

    async def delete_sessions_before(self, cutoff: str) -> int:
        cutoff_time = datetime.fromisoformat(cutoff)
        expired = [
            session_id for session_id, row in self.sessions.items()
            if datetime.fromisoformat(row['updated_at']) < cutoff_time
        ]
        for session_id in expired:
            del self.sessions[session_id]
        return len(expired)

    async def upsert_location_fix(self, record: Record) -> None:
        self.location_fixes[record['phone_number']] = dict(record)

    async def get_location_fix(self, phone_number: str) -> Optional[Record]:
        fix = self.location_fixes.get(phone_number)
        return dict(fix) if fix else None

    async def insert_agent(self, record: Record) -> Record:
        row = dict(record, id=next(self._agent_ids))
        self.agents[row['id']] = row
        return dict(row)

    async def get_agent(self, agent_id: int) -> Optional[Record]:
        agent = self.agents.get(agent_id)
        return dict(agent) if agent else None

    async def list_agents(self, phone_number: str) -> List[Record]:
        rows = [dict(row) for row in self.agents.values() if row['phone_number'] == phone_number]
        rows.sort(key=lambda row: (row['created_at'], row['id']))
        return rows

    async def update_agent(self, agent_id: int, fields: Record) -> None:
        if agent_id in self.agents:
            self.agents[agent_id].update(fields)

    async def delete_agent(self, agent_id: int) -> None:
        self.agents.pop(agent_id, None)

    async def set_active_agent(self, phone_number: str, agent_id: Optional[int], updated_at: str) -> None:
        for row in self.agents.values():
            if row['phone_number'] != phone_number:
                continue
            active = row['id'] == agent_id
            if row['active'] != active:
                row['active'] = active
                row['updated_at'] = updated_at
