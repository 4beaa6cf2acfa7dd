"""
디코드 오케스트레이션 모듈 패키지

- stream_selector: 디코드할 스트림 선택 및 DecodeContext 바인딩
- decode_context: 스트림 하나의 send/drain 루프
- demux_loop: 패킷 읽기/라우팅 상태 머신
"""
