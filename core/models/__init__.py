# 商品与套餐（目录）
from .product import Product
from .plan import Plan
# 订单与订阅
from .order import Order
from .subscription import Subscription
# 基础模型
from .base import *
