from flagmon.session.flow_key import FlowKey, flow_key
from flagmon.session.pool import SessionPool
from flagmon.session.session import Session, SessionSnapshot

__all__ = ["FlowKey", "Session", "SessionPool", "SessionSnapshot", "flow_key"]
