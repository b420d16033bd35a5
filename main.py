import os

import uvicorn
from database_setup import get_engine, DatabaseManager
from api_interface import app


def initialize_database():
    """初始化数据库表结构（如果尚未创建）"""
    print("正在检查数据库表结构...")
    engine = get_engine()
    with engine.connect() as conn:
        with conn.begin():
            db_manager = DatabaseManager()
            db_manager.init_all_tables(conn)
    print("数据库表结构初始化完成。")


def create_test_data():
    """创建营销场景测试数据：商品、优惠券、包邮促销、推荐链、分销等级"""
    print("正在创建测试数据...")
    engine = get_engine()
    with engine.connect() as conn:
        with conn.begin():
            db_manager = DatabaseManager()
            seeded = db_manager.create_test_data(conn)
    print(f"测试数据创建完成: {seeded}")


if __name__ == "__main__":
    initialize_database()

    # 开发环境下设置 SEED_DATA=1 以写入测试数据
    if os.getenv('SEED_DATA') == '1':
        create_test_data()

    print("启动营销计价与分佣引擎 API...")
    uvicorn.run(
        "api_interface:app",
        host="0.0.0.0",
        port=int(os.getenv('PORT', 8000)),
        reload=False,
        log_level="info",
        access_log=True
    )
