from __future__ import annotations

from app.erp.application import Controller, Module
from app.erp.modules.core.admin import UsersController

MESSAGES = {
    "en": {
        "NavigationLinks.Users": "Users",
        "Users.Meta.List.Title": "Users",
        "Users.Meta.New.Title": "New user",
        "Users.List.New": "New user",
        "Users.List.Search": "Search",
        "Users.List.Empty": "No users found.",
        "Users.List.Total": "{total} users",
        "Users.Fields.Email": "Email",
        "Users.Fields.FirstName": "First name",
        "Users.Fields.LastName": "Last name",
        "Users.Fields.Password": "Password",
        "Users.Fields.Language": "Language",
        "Users.Fields.Roles": "Roles",
        "Common.Save": "Save",
        "Common.Back": "Back",
        "Auth.Login": "Log in",
        "Auth.Logout": "Log out",
    },
    "ru": {
        "NavigationLinks.Users": "Пользователи",
        "Users.Meta.List.Title": "Пользователи",
        "Users.Meta.New.Title": "Новый пользователь",
        "Users.List.New": "Новый пользователь",
        "Users.List.Search": "Поиск",
        "Users.List.Empty": "Пользователи не найдены.",
        "Users.List.Total": "Пользователей: {total}",
        "Users.Fields.Email": "Почта",
        "Users.Fields.FirstName": "Имя",
        "Users.Fields.LastName": "Фамилия",
        "Users.Fields.Password": "Пароль",
        "Users.Fields.Language": "Язык",
        "Users.Fields.Roles": "Роли",
        "Common.Save": "Сохранить",
        "Common.Back": "Назад",
        "Auth.Login": "Войти",
        "Auth.Logout": "Выйти",
    },
    "uz": {
        "NavigationLinks.Users": "Foydalanuvchilar",
        "Users.Meta.List.Title": "Foydalanuvchilar",
        "Users.Meta.New.Title": "Yangi foydalanuvchi",
        "Users.List.New": "Yangi foydalanuvchi",
        "Users.List.Search": "Qidirish",
        "Users.List.Empty": "Foydalanuvchilar topilmadi.",
        "Users.Fields.Email": "Pochta",
        "Users.Fields.FirstName": "Ism",
        "Users.Fields.LastName": "Familiya",
        "Users.Fields.Password": "Parol",
        "Users.Fields.Language": "Til",
        "Common.Save": "Saqlash",
        "Auth.Login": "Kirish",
    },
}


class CoreModule(Module):
    name = "core"
    messages = MESSAGES

    def controllers(self) -> list[Controller]:
        return [UsersController()]
