# api_interface.py - 计价 / 下单 / 分佣 / 系统设置接口
import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from active_member import ActiveMemberRefresher
from config import LOG_FILE, SCHEDULER_ENABLED
from coupon_ledger import CouponLedger
from database_setup import DatabaseManager, get_db_session, get_engine, get_session_factory
from exceptions import MemberNotFound, OrderException, PricingException, ProductNotFound
from order_service import OrderService
from pricing_engine import CamelModel, OrderLine, PointUsage, PricingEngine, QuoteRequest
from scheduler import get_job_status, reschedule_active_member_job, shutdown_scheduler, start_scheduler
from settings_store import SettingsStore, get_settings_store

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE, encoding='utf-8'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


class ResponseModel(BaseModel):
    code: int = 0
    message: str
    data: Optional[Any] = None


class PricingRequest(CamelModel):
    """单商品时直接传 productId/skuId/quantity，多商品时传 items。"""
    member_id: int = Field(..., gt=0)
    product_id: Optional[int] = Field(None, gt=0)
    sku_id: Optional[int] = Field(None, gt=0)
    quantity: Optional[int] = None
    items: List[OrderLine] = Field(default_factory=list)
    applied_coupons: List[int] = Field(default_factory=list)
    applied_promotions: List[int] = Field(default_factory=list)
    point_usage: Optional[PointUsage] = None
    reservation_key: Optional[str] = Field(None, max_length=64)

    @model_validator(mode='after')
    def check_items(self):
        if not self.items and self.product_id is None:
            raise ValueError("必须提供 productId 或 items")
        return self

    def to_quote_request(self) -> QuoteRequest:
        items = list(self.items)
        if self.product_id is not None:
            items.insert(0, OrderLine(
                product_id=self.product_id,
                sku_id=self.sku_id,
                quantity=self.quantity if self.quantity is not None else 1,
            ))
        return QuoteRequest(
            member_id=self.member_id,
            items=items,
            applied_coupons=self.applied_coupons,
            applied_promotions=self.applied_promotions,
            point_usage=self.point_usage,
            reservation_key=self.reservation_key,
        )


class OrderCreateRequest(PricingRequest):
    order_no: Optional[str] = Field(None, min_length=4, max_length=64)


class SystemSettingsUpdate(CamelModel):
    active_member_check_enabled: Optional[bool] = None
    active_member_check_days: Optional[int] = None
    active_member_condition: Optional[str] = None
    active_member_check_interval_hours: Optional[int] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    if SCHEDULER_ENABLED:
        start_scheduler()
    yield
    if SCHEDULER_ENABLED:
        shutdown_scheduler()


app = FastAPI(
    title="营销计价与分佣引擎API",
    description="优惠券 + 促销 + 积分叠加计价，订单多级分佣，活跃会员检测",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.status_code, "message": str(exc.detail), "data": None},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get('msg', '参数校验失败') if errors else '参数校验失败'
    return JSONResponse(
        status_code=422,
        content={"code": 422, "message": message, "data": None},
    )


def get_order_service(
        session: Session = Depends(get_db_session),
        store: SettingsStore = Depends(get_settings_store)
) -> OrderService:
    return OrderService(session, store.get())


def _status_for(e: PricingException) -> int:
    if isinstance(e, (ProductNotFound, MemberNotFound)):
        return 404
    return 400


@app.get("/", summary="系统状态")
async def root():
    return {"message": "营销计价与分佣引擎运行中", "version": "1.0.0"}


@app.post("/api/init", response_model=ResponseModel, summary="初始化数据库")
async def init_database(db_manager: DatabaseManager = Depends()):
    try:
        engine = get_engine()
        with engine.connect() as conn:
            with conn.begin():
                db_manager.init_all_tables(conn)
        return ResponseModel(message="数据库初始化成功")
    except Exception as e:
        logger.error(f"数据库初始化失败: {e}")
        raise HTTPException(status_code=500, detail=f"初始化失败: {e}")


@app.post("/api/pricing/quote", response_model=ResponseModel, summary="订单计价")
async def quote_price(
        request: PricingRequest,
        session: Session = Depends(get_db_session)
):
    try:
        pricing = PricingEngine(session).quote(request.to_quote_request())
        return ResponseModel(message="计价成功", data={
            "pricing": pricing.to_payload(),
            "appliedCoupons": pricing.applied_coupons,
            "appliedPromotions": pricing.applied_promotions,
            "reservationKey": pricing.reservation_key,
        })
    except PricingException as e:
        raise HTTPException(status_code=_status_for(e), detail=str(e))
    except Exception as e:
        logger.error(f"计价失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/pricing/reservations/{key}/release", response_model=ResponseModel, summary="放弃报价并释放优惠券")
async def release_reservation(
        key: str = Path(..., min_length=1, max_length=64),
        session: Session = Depends(get_db_session)
):
    try:
        released = CouponLedger(session).release(key)
        session.commit()
        return ResponseModel(message="预占已释放", data={"released": released})
    except Exception as e:
        session.rollback()
        logger.error(f"释放优惠券预占失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/orders", response_model=ResponseModel, summary="下单")
async def create_order(
        request: OrderCreateRequest,
        service: OrderService = Depends(get_order_service)
):
    try:
        result = service.create_order(request.to_quote_request(), order_no=request.order_no)
        return ResponseModel(message="下单成功", data=result.to_payload())
    except PricingException as e:
        raise HTTPException(status_code=_status_for(e), detail=str(e))
    except Exception as e:
        logger.error(f"下单失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/orders/{order_no}/settle", response_model=ResponseModel, summary="订单结算")
async def settle_order(
        order_no: str,
        service: OrderService = Depends(get_order_service)
):
    try:
        return ResponseModel(message="结算成功", data=service.settle_order(order_no))
    except OrderException as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"订单结算失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/orders/{order_no}/cancel", response_model=ResponseModel, summary="取消订单")
async def cancel_order(
        order_no: str,
        service: OrderService = Depends(get_order_service)
):
    try:
        return ResponseModel(message="订单已取消", data=service.cancel_order(order_no))
    except OrderException as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"取消订单失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/orders/{order_no}/commissions/redistribute", response_model=ResponseModel, summary="重新分佣")
async def redistribute_commissions(
        order_no: str,
        service: OrderService = Depends(get_order_service)
):
    try:
        result = service.redistribute(order_no)
        return ResponseModel(message="分佣完成", data=result.model_dump(mode='json'))
    except OrderException as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"重新分佣失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/orders/{order_no}/commissions", response_model=ResponseModel, summary="查询订单佣金")
async def list_commissions(
        order_no: str,
        service: OrderService = Depends(get_order_service)
):
    try:
        records = service.list_commissions(order_no)
        return ResponseModel(message="查询成功", data={
            "records": [r.model_dump(mode='json') for r in records]
        })
    except OrderException as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"查询佣金失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/settings/system", response_model=ResponseModel, summary="查询系统设置")
async def get_system_settings(store: SettingsStore = Depends(get_settings_store)):
    return ResponseModel(message="查询成功", data={
        **store.get().to_payload(),
        "jobs": get_job_status(),
    })


@app.put("/api/settings/system", response_model=ResponseModel, summary="更新系统设置")
async def update_system_settings(
        request: SystemSettingsUpdate,
        store: SettingsStore = Depends(get_settings_store)
):
    try:
        previous = store.get()
        settings = store.update(request.model_dump(by_alias=True, exclude_none=True))
        if settings.active_member_check_interval_hours != previous.active_member_check_interval_hours:
            reschedule_active_member_job(settings.active_member_check_interval_hours)
        return ResponseModel(message="设置已更新", data=settings.to_payload())
    except OSError as e:
        logger.error(f"保存系统设置失败: {e}")
        raise HTTPException(status_code=500, detail=f"保存失败: {e}")


@app.post("/api/settings/active-member-check/run", response_model=ResponseModel, summary="立即执行活跃会员检测")
def run_active_member_check(
        store: SettingsStore = Depends(get_settings_store),
        session_factory=Depends(get_session_factory)
):
    result = ActiveMemberRefresher(session_factory, store.get).tick()
    if result.skipped and result.reason == 'error':
        raise HTTPException(status_code=500, detail="活跃会员检测执行失败，已保留上次结果")
    return ResponseModel(message="检测完成", data=result.model_dump(mode='json'))
