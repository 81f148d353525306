DEFAULT_MENU_ITEMS = [
    {"name": "Pizza Margarita", "price": "8.50", "category": "Pizzas", "description": "Tomate, mozzarella y albahaca"},
    {"name": "Pizza Barbacoa", "price": "10.90", "category": "Pizzas", "description": "Carne, bacon y salsa barbacoa"},
    {"name": "Pizza Cuatro Quesos", "price": "10.50", "category": "Pizzas"},
    {"name": "Hamburguesa Clásica", "price": "9.00", "category": "Burgers", "description": "Ternera, lechuga, tomate y queso"},
    {"name": "Hamburguesa Bacon", "price": "10.50", "category": "Burgers"},
    {"name": "Ensalada César", "price": "7.50", "category": "Ensaladas"},
    {"name": "Refresco", "price": "2.50", "category": "Bebidas"},
    {"name": "Agua", "price": "1.80", "category": "Bebidas"},
    {"name": "Tarta de Queso", "price": "6.00", "category": "Postres"},
]
