"""Order core of the storefront: checkout, coupons, stock audit and order status."""
