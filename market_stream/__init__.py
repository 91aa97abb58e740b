# market_stream/__init__.py
"""
실시간 암호화폐 시세 배포 서버

거래소 push 스트림을 받아 임계값 캐시로 걸러낸 뒤,
채널을 구독한 WebSocket 클라이언트에게만 전달합니다.
"""

__version__ = "1.0.0"
