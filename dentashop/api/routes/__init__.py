from dentashop.api.routes import promotions
