import asyncio
import pandas as pd
from inventory_portal.db.db_apis import DbApi
from inventory_portal.db.db_utils import DbUtil


async def insert_initial_data(db_api: DbApi):
    initial_data = {}

    # initial insert
    initial_data['category'] = pd.DataFrame({
        'category_name': ['Cables', 'Networking', 'Tools'],
        'description': ['Fibre and copper cabling', 'Routers, switches and ONTs', '']
    })

    initial_data['users'] = pd.DataFrame({
        'user_name': ['admin', 'approver1', 'approver2', 'storekeeper'],
        'full_name': ['Administrator', 'First Approver', 'Second Approver', 'Store Keeper'],
        'role': ['superadmin', 'approver', 'approver', 'issuer']
    })

    initial_data['items'] = pd.DataFrame({
        'item_name': ['Drop cable 1km', 'ONT router', 'Splicing kit'],
        'category_id': [1, 2, 3],
        'quantity': [20, 15, 4],
        'low_stock_threshold': [5, 5, 2],
        'vendor_name': ['Acme Fibre', None, 'Toolco'],
        'description': ['', '', '']
    })

    for table, data_df in initial_data.items():
        await db_api.insert_df(table, data_df)


async def main():
    db_util = DbUtil()
    db_api = DbApi(db_util)

    # Initialize db by dropping all the tables and then
    # creating them all over again.
    await db_api.initialize_db()

    # After creating the tables, inserting initial data
    await insert_initial_data(db_api)
    await db_util.close()


if __name__ == '__main__':
    asyncio.run(main())
