"""DentaShop promotions service."""
