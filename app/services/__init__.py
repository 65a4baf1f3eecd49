# app/services/__init__.py

"""
FastAPI 애플리케이션의 서비스 계층 패키지입니다.

CRUD 작업은 각 도메인의 `crud.py` 파일에서 직접 데이터베이스와 상호 작용하는 반면,
이 패키지는 여러 엔티티에 걸친 상태 전이 규칙을 담습니다.

- `workflow_rules.py`: FastQ 반려 -> 진행 중 ETL 결과 취소,
  ETL 결과 검증 반려 -> 최신 FastQ 파일 쌍 재승인 대기.
"""

# 패키지 메타데이터 (선택 사항)
__title__ = "Genomics LIMS Services"
__description__ = "Cross-entity workflow rules for the Genomics LIMS ETL API."
__version__ = "0.1.0"
__all__ = []
