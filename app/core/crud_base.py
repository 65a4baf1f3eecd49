# app/core/crud_base.py

"""
공통 CRUD 작업을 위한 기본 클래스 모듈입니다.
모든 메서드는 비동기(async) 세션을 사용합니다.

워크플로우 레코드(세션, FastQ, ETL 결과, 예약 작업)는 감사 이력으로 남기 때문에
삭제 메서드는 제공하지 않습니다.
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from pydantic import BaseModel

ModelType = TypeVar("ModelType", bound=SQLModel)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """
    모든 도메인 CRUD 클래스의 기본 클래스입니다.
    """
    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get(self, db: AsyncSession, id: Any) -> Optional[ModelType]:
        """ID를 기준으로 단일 레코드를 조회합니다."""
        return await db.get(self.model, id)

    async def create(self, db: AsyncSession, *, obj_in: CreateSchemaType, **extra: Any) -> ModelType:
        """
        새로운 레코드를 생성합니다. extra 값은 스키마에 없는 서버 측 필드(작성자 등)를 채웁니다.
        """
        db_obj = self.model.model_validate(obj_in.model_dump(), update=extra)
        return await self.save(db, db_obj)

    async def save(self, db: AsyncSession, db_obj: ModelType) -> ModelType:
        """변경된 모델 객체를 커밋하고 새로고침하여 반환합니다."""
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        return db_obj
