from blinker import Signal

on_coupon_claimed = Signal()
on_pool_exhausted = Signal()
